"""
Post-level status derived from the statuses of its platform sub-posts.

Precedence (first match wins):
  1. any sub-post scheduled / queued / publishing -> publishing
  2. all canceled                                 -> canceled
  3. all published                                -> published
  4. at least one published                       -> partially_published
  5. otherwise                                    -> failed

Draft sub-posts never count as pending; they are simply "not published".
"""
from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import PENDING_SUB_STATUSES, PlatformPost, PlatformPostStatus, Post, PostStatus
from app.services.errors import NoPublishTargets

logger = logging.getLogger(__name__)

# user-driven states that sub-post outcomes never overwrite
HEAL_EXEMPT_POST_STATUSES = (PostStatus.draft.value, PostStatus.scheduled.value)


def _value(status) -> str:
    return status.value if isinstance(status, PlatformPostStatus) else str(status)


def reconcile(statuses: Iterable[str | PlatformPostStatus]) -> PostStatus:
    """Compute the aggregate post status. Pure and order-independent."""
    values = [_value(s) for s in statuses]
    if not values:
        raise NoPublishTargets("Cannot derive post status without platform targets")

    if any(v in PENDING_SUB_STATUSES for v in values):
        return PostStatus.publishing
    if all(v == PlatformPostStatus.canceled.value for v in values):
        return PostStatus.canceled

    published = sum(1 for v in values if v == PlatformPostStatus.published.value)
    if published == len(values):
        return PostStatus.published
    if published > 0:
        return PostStatus.partially_published
    return PostStatus.failed


async def reconcile_post_status(session: AsyncSession, post_id: int) -> PostStatus:
    """Recompute a post's status from a fresh snapshot of its sub-posts and persist it."""
    result = await session.execute(
        select(PlatformPost.status).where(PlatformPost.post_id == post_id)
    )
    statuses = list(result.scalars().all())
    new_status = reconcile(statuses)

    await session.execute(
        update(Post)
        .where(Post.id == post_id, Post.status != new_status.value)
        .values(status=new_status.value)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.debug(f"[reconcile] post={post_id} statuses={statuses} -> {new_status.value}")
    return new_status


async def heal_post_status(session: AsyncSession, post: Post) -> bool:
    """AutoFix a post whose stored status disagrees with its settled sub-posts.

    `post.platform_posts` must already be loaded. Returns True when the
    aggregate was rewritten.
    """
    if post.status in HEAL_EXEMPT_POST_STATUSES:
        return False

    statuses = [pp.status for pp in post.platform_posts]
    if not statuses:
        logger.warning(f"[AutoFix] post={post.id} has no platform targets, leaving status {post.status}")
        return False
    if any(s in PENDING_SUB_STATUSES for s in statuses):
        return False

    new_status = reconcile(statuses)
    if new_status.value == post.status:
        return False
    logger.info(f"[AutoFix] post={post.id} {post.status} -> {new_status.value} (statuses={statuses})")
    post.status = new_status.value
    await session.commit()
    return True
