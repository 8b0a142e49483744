from __future__ import annotations

from datetime import timedelta

import pytest

from app.models import utcnow
from app.services.account_service import create_oauth_state
from app.services.scheduler import SchedulerService


@pytest.fixture
async def service(engine):
    svc = SchedulerService()
    svc.configure(engine=engine)
    yield svc
    svc.stop()


async def test_disabled_scheduler_does_not_start(service):
    service.start()
    assert service.is_running() is False
    assert service.list_jobs() == []


async def test_forced_start_registers_jobs(service):
    service.start(force=True)

    assert service.is_running() is True
    assert {job["id"] for job in service.list_jobs()} == {"publish_due", "watchdog", "purge_oauth_states"}

    service.stop()
    assert service.is_running() is False
    assert service.list_jobs() == []


async def test_run_now_executes_tick(service, session):
    await create_oauth_state(session, "user-1", "tiktok", now=utcnow() - timedelta(hours=2))
    service.start(force=True)

    purge = await service.run_now("purge_oauth_states")
    due = await service.run_now("publish_due")

    assert purge == {"ok": True, "result": {"purged": 1}}
    assert due["result"]["message"] == "No scheduled posts to process"


async def test_run_now_unknown_job(service):
    assert await service.run_now("nope") == {"error": "Job nope not found"}


async def test_failed_publish_tick_alerts_and_reraises(service, monkeypatch):
    alerts = []

    async def broken_run(session):
        raise RuntimeError("db unreachable")

    async def record(title, payload=None):
        alerts.append((title, payload))
        return True

    monkeypatch.setattr("app.services.scheduler_trigger.run_due_posts", broken_run)
    monkeypatch.setattr("app.services.scheduler.notify_error", record)

    with pytest.raises(RuntimeError, match="db unreachable"):
        await service._run_publish_due()

    assert alerts == [("Scheduler: publish_due tick failed", "RuntimeError: db unreachable")]
