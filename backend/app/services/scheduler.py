"""
Scheduler Service

In-process alternative to an external cron hitting /api/scheduler/run:
- publishes due scheduled sub-posts every SCHEDULER_INTERVAL_MINUTES
- runs the stuck-publishing watchdog
- purges expired OAuth state nonces

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Controlled by SCHEDULER_ENABLED env (default: false)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.db import build_engine, build_session_factory
from app.services.notify import notify_error
from app.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_PUBLISH_DUE = 910_001
LOCK_WATCHDOG = 910_002
LOCK_PURGE_OAUTH = 910_003


class SchedulerService:
    """Periodic publishing ticks.

    Each job holds pg_try_advisory_lock on a dedicated connection for the
    duration of the tick, so only one backend instance (the leader) runs it.
    """

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str | None = None, *, engine: AsyncEngine | None = None):
        """Bind the service to a database (URL or an existing engine)."""
        self._engine = engine or build_engine(database_url or get_settings().async_database_url, pool_pre_ping=True)
        self._session_factory = build_session_factory(self._engine)

    def _ensure_configured(self):
        if self._session_factory is None:
            self.configure()

    @asynccontextmanager
    async def _leader(self, lock_key: int, job: str) -> AsyncIterator[bool]:
        """Yield True when this instance holds the advisory lock for `job`."""
        self._ensure_configured()
        async with self._engine.connect() as conn:
            if conn.dialect.name != "postgresql":
                yield True
                return
            acquired = (await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": lock_key})).scalar()
            if not acquired:
                logger.debug(f"[{job}] Advisory lock not acquired, another instance is leader, skipping tick")
                yield False
                return
            try:
                yield True
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": lock_key})

    def start(self, *, force: bool = False):
        """Start the scheduler (respects SCHEDULER_ENABLED unless forced)."""
        settings = get_settings()
        if not settings.scheduler_enabled and not force:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self._run_publish_due,
            IntervalTrigger(minutes=settings.scheduler_interval_minutes),
            id="publish_due",
            name="Publish due scheduled posts",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._run_watchdog,
            IntervalTrigger(minutes=5),
            id="watchdog",
            name="Fail sub-posts stuck in publishing",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_purge_oauth_states,
            IntervalTrigger(hours=1),
            id="purge_oauth_states",
            name="Purge expired OAuth states",
            replace_existing=True,
        )

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started (single-leader mode via advisory locks)")

    def stop(self):
        if self._running:
            # a shut down AsyncIOScheduler cannot be restarted
            self.scheduler.shutdown(wait=False)
            self.scheduler, self._running = AsyncIOScheduler(), False
            logger.info("Scheduler stopped, jobs cleared")

    def is_running(self) -> bool:
        return self._running

    async def _run_publish_due(self):
        async with self._leader(LOCK_PUBLISH_DUE, "publish_due") as leader:
            if not leader:
                return None
            from app.services.scheduler_trigger import run_due_posts

            try:
                async with self._session_factory() as session:
                    result = await run_due_posts(session)
            except Exception as e:
                logger.exception("[publish_due] tick failed")
                await notify_error("Scheduler: publish_due tick failed", f"{e.__class__.__name__}: {e}")
                raise
            if result["processed"] or result["skipped"]:
                logger.info(
                    f"[publish_due] Completed: {result['succeeded']} published, "
                    f"{result['failed']} failed, {result['skipped']} skipped"
                )
            return result

    async def _run_watchdog(self):
        async with self._leader(LOCK_WATCHDOG, "watchdog") as leader:
            if not leader:
                return None
            from app.services.watchdog_service import run_watchdog

            async with self._session_factory() as session:
                return await run_watchdog(session)

    async def _run_purge_oauth_states(self):
        async with self._leader(LOCK_PURGE_OAUTH, "purge_oauth_states") as leader:
            if not leader:
                return None
            from app.services.account_service import purge_expired_oauth_states

            async with self._session_factory() as session:
                purged = await purge_expired_oauth_states(session)
            return {"purged": purged}

    def list_jobs(self) -> list[dict]:
        """Registered ticks with their next fire time (UTC ISO)."""
        return [
            {
                "id": job.id,
                "name": job.name,
                "trigger": str(job.trigger),
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]

    async def run_now(self, job_id: str) -> dict:
        """Fire a registered tick out of band (still leader-gated)."""
        job = self.scheduler.get_job(job_id)
        if job is None:
            return {"error": f"Job {job_id} not found"}
        logger.info(f"[{job_id}] manual run")
        return {"ok": True, "result": await job.func()}


# Global instance
scheduler_service = SchedulerService.get_instance()
