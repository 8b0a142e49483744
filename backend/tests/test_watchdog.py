from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select, update

from app.models import JobEvent, PlatformPost
from app.services.watchdog_service import get_health, run_watchdog
from helpers import NOW, by_platform


async def _started(session, post_id: int, platform: str, minutes_ago: int):
    await session.execute(
        update(PlatformPost)
        .where(PlatformPost.post_id == post_id, PlatformPost.platform == platform)
        .values(started_at=NOW - timedelta(minutes=minutes_ago), attempts=1)
    )
    await session.commit()


async def test_stuck_sub_post_is_failed_and_parent_reconciled(session, make_post, load_post):
    post_id = await make_post(
        status="publishing", sub_status={"instagram": "publishing", "facebook": "published"}
    )
    await _started(session, post_id, "instagram", minutes_ago=40)

    report = await run_watchdog(session, now=NOW)

    assert report["stuck_count"] == 1
    assert report["items"][0]["action"] == "marked_failed"
    assert report["items"][0]["age_minutes"] == 40
    assert report["reconciled_posts"] == [post_id]

    post = await load_post(post_id)
    instagram = by_platform(post)["instagram"]
    assert instagram.status == "failed"
    assert instagram.last_error == "watchdog: stuck publishing > 15m (age=40m)"
    assert post.status == "partially_published"

    events = (await session.execute(select(JobEvent.event_type))).scalars().all()
    assert events == ["watchdog_failed"]


async def test_dry_run_reports_without_writing(session, make_post, load_post):
    post_id = await make_post(platforms=("tiktok",), status="publishing", sub_status="publishing")
    await _started(session, post_id, "tiktok", minutes_ago=60)

    report = await run_watchdog(session, dry_run=True, now=NOW)

    assert report["dry_run"] is True
    assert report["items"][0]["action"] == "would_mark_failed"
    assert report["reconciled_posts"] == []
    post = await load_post(post_id)
    assert by_platform(post)["tiktok"].status == "publishing"
    assert post.status == "publishing"


async def test_recent_publish_is_left_alone(session, make_post, load_post):
    post_id = await make_post(platforms=("tiktok",), status="publishing", sub_status="publishing")
    await _started(session, post_id, "tiktok", minutes_ago=5)

    report = await run_watchdog(session, now=NOW)

    assert report["stuck_count"] == 0
    assert by_platform(await load_post(post_id))["tiktok"].status == "publishing"


async def test_health_overview(session, make_post):
    stuck_id = await make_post(platforms=("tiktok",), status="publishing", sub_status="publishing")
    await _started(session, stuck_id, "tiktok", minutes_ago=30)
    await make_post(
        platforms=("instagram",), status="scheduled", sub_status="scheduled", scheduled_for=NOW - timedelta(minutes=2)
    )
    await make_post(
        platforms=("facebook",), status="scheduled", sub_status="scheduled", scheduled_for=NOW + timedelta(days=1)
    )

    health = await get_health(session, now=NOW)

    assert health["counts"] == {"publishing": 1, "scheduled": 2}
    assert health["stuck_publishing"] == 1
    assert health["due_scheduled"] == 1
    assert health["scheduler_enabled"] is False
    assert health["last_events"] == []
