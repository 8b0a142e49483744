"""
Operations endpoints: watchdog, health, job audit trail.
"""
from __future__ import annotations

from fastapi import APIRouter, Query
from sqlalchemy import select

from app.models import JobEvent, PlatformPost, Post
from .deps import OperatorAuth, SessionDep, UserDep

router = APIRouter(prefix="/api/ops", tags=["ops"])


@router.post("/watchdog", dependencies=[OperatorAuth])
async def run_watchdog_endpoint(session: SessionDep, dry_run: bool = Query(default=True)):
    """Fail sub-posts stuck in publishing (dry run by default)."""
    from app.services.watchdog_service import run_watchdog
    return await run_watchdog(session, dry_run=dry_run)


@router.get("/health")
async def health_endpoint(session: SessionDep):
    """Sub-post counts, stuck publishes, overdue schedules, recent events."""
    from app.services.watchdog_service import get_health
    return await get_health(session)


@router.get("/events")
async def list_events(
    session: SessionDep,
    user_id: UserDep,
    post_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    """JobEvent audit trail for the caller's sub-posts, newest first."""
    query = (
        select(JobEvent, PlatformPost.platform, PlatformPost.post_id)
        .join(PlatformPost, JobEvent.platform_post_id == PlatformPost.id)
        .join(Post, PlatformPost.post_id == Post.id)
        .where(Post.user_id == user_id)
        .order_by(JobEvent.id.desc())
        .limit(limit)
    )
    if post_id is not None:
        query = query.where(Post.id == post_id)
    result = await session.execute(query)
    return [
        {
            "id": event.id,
            "platform_post_id": event.platform_post_id,
            "post_id": pp_post_id,
            "platform": platform,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at,
        }
        for event, platform, pp_post_id in result.all()
    ]
