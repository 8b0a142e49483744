"""
Watchdog service: finds platform sub-posts stuck in `publishing` and fails them.

A sub-post stays in `publishing` forever when the invocation that claimed it
was killed mid-flight (execution-time ceiling, deploy, crash). Stuck criteria:
- status == "publishing" and started_at < now - STUCK_PUBLISHING_MINUTES
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import JobEvent, PlatformPost, PlatformPostStatus, ensure_aware, utcnow
from app.services.status_reconciler import reconcile_post_status
from app.settings import get_settings

logger = logging.getLogger(__name__)


def _stuck_filter(cutoff: datetime):
    return and_(
        PlatformPost.status == PlatformPostStatus.publishing.value,
        PlatformPost.started_at < cutoff,
    )


async def run_watchdog(
    session: AsyncSession, *, dry_run: bool = False, now: datetime | None = None,
) -> dict[str, Any]:
    """Fail stuck sub-posts and reconcile their parents.

    Returns a report dict.
    """
    settings = get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.stuck_publishing_minutes)

    stuck_q = await session.execute(select(PlatformPost).where(_stuck_filter(cutoff)).order_by(PlatformPost.id))
    stuck = list(stuck_q.scalars().all())

    report_items: list[dict] = []
    touched_posts: set[int] = set()

    for pp in stuck:
        age_minutes = (now - ensure_aware(pp.started_at)).total_seconds() / 60
        error_msg = f"watchdog: stuck publishing > {settings.stuck_publishing_minutes}m (age={age_minutes:.0f}m)"
        item = {
            "platform_post_id": pp.id,
            "post_id": pp.post_id,
            "platform": pp.platform,
            "age_minutes": round(age_minutes),
            "error_message": error_msg,
        }

        if dry_run:
            item["action"] = "would_mark_failed"
            report_items.append(item)
            continue

        result = await session.execute(
            update(PlatformPost)
            .where(PlatformPost.id == pp.id, PlatformPost.status == PlatformPostStatus.publishing.value)
            .values(status=PlatformPostStatus.failed.value, last_error=error_msg)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            item["action"] = "finished_meanwhile"
        else:
            session.add(JobEvent(
                platform_post_id=pp.id,
                event_type="watchdog_failed",
                payload={"age_minutes": round(age_minutes), "error": error_msg},
            ))
            item["action"] = "marked_failed"
            touched_posts.add(pp.post_id)
        report_items.append(item)

    if not dry_run and report_items:
        await session.commit()
        for post_id in sorted(touched_posts):
            await reconcile_post_status(session, post_id)

        from app.services.notify import notify_warn
        summary = ", ".join(
            f"pp#{it['platform_post_id']}({it['platform']} {it['age_minutes']}m)" for it in report_items[:10]
        )
        await notify_warn(f"Watchdog: {len(report_items)} stuck publishes", summary)

    total = len(report_items)
    logger.info(f"[watchdog] Found {total} stuck sub-posts (dry_run={dry_run})")

    return {
        "stuck_count": total,
        "items": report_items,
        "reconciled_posts": sorted(touched_posts),
        "dry_run": dry_run,
        "run_at": now.isoformat(),
        "settings": {
            "stuck_publishing_minutes": settings.stuck_publishing_minutes,
        },
    }


async def get_health(session: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
    """Return system health overview."""
    settings = get_settings()
    now = now or utcnow()

    counts_q = await session.execute(
        select(PlatformPost.status, func.count(PlatformPost.id)).group_by(PlatformPost.status)
    )
    counts = {row[0]: row[1] for row in counts_q.all()}

    cutoff = now - timedelta(minutes=settings.stuck_publishing_minutes)
    stuck = await session.scalar(select(func.count(PlatformPost.id)).where(_stuck_filter(cutoff)))

    overdue = await session.scalar(
        select(func.count(PlatformPost.id)).where(
            PlatformPost.status == PlatformPostStatus.scheduled.value,
            PlatformPost.scheduled_for <= now,
        )
    )

    last_events_q = await session.execute(
        select(JobEvent.event_type, JobEvent.platform_post_id, JobEvent.created_at)
        .order_by(JobEvent.id.desc())
        .limit(10)
    )
    last_events = [
        {
            "event": event_type,
            "platform_post_id": pp_id,
            "at": ensure_aware(created_at).isoformat() if created_at else None,
        }
        for event_type, pp_id, created_at in last_events_q.all()
    ]

    return {
        "counts": counts,
        "stuck_publishing": stuck or 0,
        "due_scheduled": overdue or 0,
        "scheduler_enabled": settings.scheduler_enabled,
        "last_events": last_events,
    }
