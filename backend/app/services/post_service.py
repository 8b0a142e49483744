"""
Post lifecycle: drafts, captions, scheduling, cancelation, queue view.

Publishing itself lives in publish_coordinator; this module only moves posts
between the user-driven states.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import PENDING_SUB_STATUSES, Asset, PlatformPost, PlatformPostStatus, Post, PostStatus, ensure_aware
from app.services.errors import InvalidCaption, InvalidPostState, NoPublishTargets, PostNotFound, UnsupportedPlatform
from app.services.platform_rules import is_platform_implemented, validate_caption_length
from app.services.status_reconciler import heal_post_status, reconcile

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
UTC = dt_timezone.utc

SCHEDULABLE = (PostStatus.draft.value, PostStatus.scheduled.value)
CANCEL_FORBIDDEN = (
    PostStatus.published.value,
    PostStatus.failed.value,
    PostStatus.partially_published.value,
    PostStatus.canceled.value,
)
CANCELABLE_SUB_STATUSES = (
    PlatformPostStatus.draft.value,
    PlatformPostStatus.scheduled.value,
    PlatformPostStatus.queued.value,
)
QUEUE_STATUSES = (
    PlatformPostStatus.scheduled.value,
    PlatformPostStatus.queued.value,
    PlatformPostStatus.publishing.value,
    PlatformPostStatus.failed.value,
)


def _with_children(query):
    return query.options(selectinload(Post.platform_posts), selectinload(Post.asset))


async def _load_post(session: AsyncSession, user_id: str, post_id: int) -> Post:
    post = await session.scalar(
        _with_children(select(Post).where(Post.id == post_id, Post.user_id == user_id))
        .execution_options(populate_existing=True)
    )
    if post is None:
        raise PostNotFound(f"Post {post_id} not found")
    return post


async def create_draft(
    session: AsyncSession,
    user_id: str,
    *,
    asset_id: int | None,
    context: dict[str, Any] | None,
    platforms: Iterable[str],
) -> Post:
    """Create a draft post with one draft sub-post per platform."""
    selected: list[str] = []
    for platform in platforms:
        platform = platform.lower()
        if not is_platform_implemented(platform):
            raise UnsupportedPlatform(f"Unsupported platform: {platform}")
        if platform not in selected:
            selected.append(platform)
    if not selected:
        raise NoPublishTargets("At least one platform is required")

    if asset_id is not None:
        asset = await session.scalar(select(Asset).where(Asset.id == asset_id, Asset.user_id == user_id))
        if asset is None:
            raise PostNotFound(f"Asset {asset_id} not found")

    post = Post(user_id=user_id, asset_id=asset_id, context=context or {}, status=PostStatus.draft.value)
    post.platform_posts = [
        PlatformPost(platform=p, status=PlatformPostStatus.draft.value) for p in selected
    ]
    session.add(post)
    await session.commit()
    logger.info(f"[posts] user={user_id} created draft post={post.id} platforms={selected}")
    return await _load_post(session, user_id, post.id)


async def get_post(session: AsyncSession, user_id: str, post_id: int) -> Post:
    post = await _load_post(session, user_id, post_id)
    await heal_post_status(session, post)
    return post


async def list_posts(session: AsyncSession, user_id: str, status: str | None = None) -> list[Post]:
    query = _with_children(select(Post).where(Post.user_id == user_id)).order_by(Post.created_at.desc(), Post.id.desc())
    if status:
        query = query.where(Post.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


async def select_captions(session: AsyncSession, user_id: str, post_id: int, captions: dict[str, str]) -> Post:
    post = await _load_post(session, user_id, post_id)
    by_platform = {pp.platform: pp for pp in post.platform_posts}

    for platform, caption in captions.items():
        platform = platform.lower()
        pp = by_platform.get(platform)
        if pp is None:
            raise InvalidCaption(f"Post has no {platform} target")
        check = validate_caption_length(platform, caption)
        if not check.valid:
            raise InvalidCaption(f"{platform}: caption exceeds {check.max_chars} characters")
        pp.caption_selected = caption
        pp.caption_final = caption

    await session.commit()
    return post


async def schedule_post(
    session: AsyncSession,
    user_id: str,
    post_id: int,
    scheduled_for: datetime,
    timezone: str | None = None,
) -> Post:
    post = await _load_post(session, user_id, post_id)
    if post.status not in SCHEDULABLE:
        raise InvalidPostState(f"Cannot schedule post with status: {post.status}")

    tz_name = timezone or DEFAULT_TIMEZONE
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidPostState(f"Unknown timezone: {tz_name}") from exc
    # Naive input is wall-clock time in the post's timezone
    if scheduled_for.tzinfo is None:
        scheduled_for = scheduled_for.replace(tzinfo=tz)
    scheduled_for = scheduled_for.astimezone(UTC)

    post.status = PostStatus.scheduled.value
    post.scheduled_for = scheduled_for
    post.timezone = tz_name
    for pp in post.platform_posts:
        pp.status = PlatformPostStatus.scheduled.value
        pp.scheduled_for = scheduled_for

    await session.commit()
    logger.info(f"[posts] post={post_id} scheduled for {scheduled_for.isoformat()} ({tz_name})")
    return post


async def cancel_post(session: AsyncSession, user_id: str, post_id: int) -> Post:
    """Cancel a post. Sub-posts already publishing finish on their own."""
    post = await _load_post(session, user_id, post_id)
    if post.status in CANCEL_FORBIDDEN:
        raise InvalidPostState(f"Cannot cancel post with status: {post.status}")

    await session.execute(
        update(PlatformPost)
        .where(PlatformPost.post_id == post_id, PlatformPost.status.in_(CANCELABLE_SUB_STATUSES))
        .values(status=PlatformPostStatus.canceled.value)
        .execution_options(synchronize_session=False)
    )
    statuses = list((await session.execute(
        select(PlatformPost.status).where(PlatformPost.post_id == post_id)
    )).scalars().all())

    # In-flight sub-posts settle the parent through their own reconcile
    if not statuses or any(s in PENDING_SUB_STATUSES for s in statuses):
        new_status = PostStatus.canceled
    else:
        new_status = reconcile(statuses)
    post.status = new_status.value
    await session.commit()
    logger.info(f"[posts] post={post_id} canceled (status={new_status.value}, statuses={statuses})")
    return await _load_post(session, user_id, post_id)


async def delete_post(session: AsyncSession, user_id: str, post_id: int):
    post = await _load_post(session, user_id, post_id)
    await session.delete(post)
    await session.commit()
    logger.info(f"[posts] post={post_id} deleted")


async def list_queue(session: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    """Sub-posts still in the pipeline (or failed), soonest first."""
    result = await session.execute(
        select(PlatformPost, Post)
        .join(Post, PlatformPost.post_id == Post.id)
        .where(Post.user_id == user_id, PlatformPost.status.in_(QUEUE_STATUSES))
        .order_by(PlatformPost.scheduled_for.is_(None), PlatformPost.scheduled_for, PlatformPost.id)
    )
    items = []
    for pp, post in result.all():
        items.append({
            "platform_post_id": pp.id,
            "post_id": post.id,
            "platform": pp.platform,
            "status": pp.status,
            "scheduled_for": ensure_aware(pp.scheduled_for),
            "caption": pp.caption_final or pp.caption_selected,
            "attempts": pp.attempts,
            "last_error": pp.last_error,
            "post_status": post.status,
            "context": post.context or {},
        })
    return items
