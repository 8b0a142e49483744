"""
Domain exceptions for publishing orchestration.

Vendor failures are never raised: adapters return them inside PublishResult.
These exceptions cover caller mistakes and missing configuration, and are
translated to HTTP errors by the route layer.
"""
from __future__ import annotations


class PublishingError(Exception):
    """Base class for publishing domain errors."""


class ConfigurationError(PublishingError):
    """Missing or invalid secrets / app configuration."""


class PostNotFound(PublishingError):
    """Post does not exist or belongs to another user."""


class InvalidPostState(PublishingError):
    """Requested transition is not allowed from the post's current status."""


class NoPublishTargets(PublishingError):
    """A post has no platform sub-posts, so no aggregate status can be derived."""


class NothingToRetry(PublishingError):
    """Retry was requested but no sub-post is currently failed."""


class MissingMediaAsset(PublishingError):
    """The post has no publicly reachable media URL."""


class InvalidCaption(PublishingError):
    """Caption violates a platform rule."""


class OAuthStateInvalid(PublishingError):
    """OAuth state nonce is unknown, mismatched or expired."""


class AccountNotFound(PublishingError):
    """Connected account does not exist for this user and platform."""


class UnsupportedPlatform(PublishingError):
    """Platform is unknown or has no publishing adapter yet."""
