"""
Cron entry point: publish scheduled sub-posts whose time has come.

Invoked by an external cron (HTTP GET/POST /api/scheduler/run) or by the
in-process APScheduler tick. One run handles a bounded batch; anything left
over is picked up by the next invocation.
"""
from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import PlatformPost, PlatformPostStatus, Post, utcnow
from app.services.publish_coordinator import PARENT_PUBLISHABLE, PublishCoordinator
from app.services.publisher_adapter import PublisherAdapter
from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _secret_matches(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def is_authorized_cron(headers: Mapping[str, str], settings: Settings | None = None) -> bool:
    """Accept the cron provider header or a Bearer scheduler secret.

    Outside production every call is allowed.
    """
    settings = settings or get_settings()
    if not settings.is_production:
        return True

    if _secret_matches(headers.get(settings.cron_header_name), settings.cron_secret):
        return True

    auth = headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return _secret_matches(auth[7:].strip(), settings.scheduler_secret)
    return False


async def find_due_platform_posts(session: AsyncSession, now: datetime, limit: int) -> list[PlatformPost]:
    result = await session.execute(
        select(PlatformPost)
        .join(Post, PlatformPost.post_id == Post.id)
        .where(
            PlatformPost.status == PlatformPostStatus.scheduled.value,
            PlatformPost.scheduled_for <= now,
            Post.status.in_(PARENT_PUBLISHABLE),
        )
        .order_by(PlatformPost.scheduled_for, PlatformPost.id)
        .limit(limit)
        .options(selectinload(PlatformPost.post).selectinload(Post.asset))
    )
    return list(result.scalars().all())


async def run_due_posts(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    publishers: Mapping[str, PublisherAdapter] | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    batch_size = batch_size or get_settings().scheduler_batch_size

    due = await find_due_platform_posts(session, now, batch_size)
    if not due:
        logger.debug("[scheduler] no scheduled posts due")
        return {
            "message": "No scheduled posts to process",
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "results": [],
        }

    logger.info(f"[scheduler] {len(due)} scheduled sub-post(s) due")
    coordinator = PublishCoordinator(session, publishers=publishers, now=lambda: now)
    summary = await coordinator.publish_due(due)

    logger.info(
        f"[scheduler] run done: processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} skipped={summary.skipped}"
    )
    if summary.failed:
        from app.services.notify import notify_warn
        failures = [f"pp#{r.platform_post_id} {r.platform}: {r.error}" for r in summary.results if not r.success and not r.skipped]
        await notify_warn(f"Scheduler: {summary.failed} publish failure(s)", "\n".join(failures[:10]))

    return {
        "message": f"Processed {summary.processed} scheduled posts",
        "processed": summary.processed,
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "skipped": summary.skipped,
        "results": [r.to_dict() for r in summary.results],
    }
