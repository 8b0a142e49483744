from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (drivers without tz support return naive values)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Platform(str, Enum):
    instagram = "instagram"
    facebook = "facebook"
    tiktok = "tiktok"
    linkedin = "linkedin"
    youtube = "youtube"


class PostStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    queued = "queued"
    publishing = "publishing"
    published = "published"
    partially_published = "partially_published"
    failed = "failed"
    canceled = "canceled"


class PlatformPostStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    queued = "queued"
    publishing = "publishing"
    published = "published"
    failed = "failed"
    canceled = "canceled"


# Sub-post states that still represent work in flight
PENDING_SUB_STATUSES = frozenset({
    PlatformPostStatus.scheduled.value,
    PlatformPostStatus.queued.value,
    PlatformPostStatus.publishing.value,
})

TERMINAL_POST_STATUSES = frozenset({
    PostStatus.published.value,
    PostStatus.partially_published.value,
    PostStatus.failed.value,
    PostStatus.canceled.value,
})


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    storage_key: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    public_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    mime: Mapped[str] = mapped_column(sa.String(64), nullable=False, server_default="video/mp4")
    size_bytes: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    width: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    height: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)

    posts: Mapped[list["Post"]] = relationship(back_populates="asset", passive_deletes=True)


class Post(Base):
    __tablename__ = "posts"
    # load server-generated timestamps on flush (no lazy refresh under asyncio)
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    asset_id: Mapped[int | None] = mapped_column(sa.ForeignKey("assets.id", ondelete="SET NULL"), nullable=True)
    context: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=PostStatus.draft.value, index=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    timezone: Mapped[str] = mapped_column(sa.String(64), nullable=False, server_default="America/New_York")
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    asset: Mapped[Asset | None] = relationship(back_populates="posts")
    platform_posts: Mapped[list["PlatformPost"]] = relationship(
        back_populates="post", cascade="all, delete-orphan", passive_deletes=True, order_by="PlatformPost.id"
    )


class PlatformPost(Base):
    __tablename__ = "platform_posts"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        sa.UniqueConstraint("post_id", "platform", name="uq_platform_posts_post_platform"),
        sa.Index("ix_platform_posts_status_scheduled_for", "status", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    caption_selected: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    caption_final: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=PlatformPostStatus.draft.value)
    scheduled_for: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    external_post_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    external_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    post: Mapped[Post] = relationship(back_populates="platform_posts")
    events: Mapped[list["JobEvent"]] = relationship(
        back_populates="platform_post", cascade="all, delete-orphan", passive_deletes=True
    )


class ConnectedAccount(Base):
    __tablename__ = "connected_accounts"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        sa.UniqueConstraint(
            "user_id", "platform", "external_account_id", name="uq_connected_accounts_user_platform_external"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    external_account_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    display_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    token_encrypted: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    scopes: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", sa.JSON(), nullable=True)
    is_primary: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    state: Mapped[str] = mapped_column(sa.String(128), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


class JobEvent(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    platform_post_id: Mapped[int] = mapped_column(
        sa.ForeignKey("platform_posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    payload: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)

    platform_post: Mapped[PlatformPost] = relationship(back_populates="events")
