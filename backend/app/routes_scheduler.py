"""
Scheduler API Routes

/run is the cron entry point (external cron provider or operator); the
remaining endpoints manage the optional in-process ticker.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.services.scheduler import scheduler_service
from app.services.scheduler_trigger import is_authorized_cron, run_due_posts
from app.settings import get_settings
from .deps import OperatorAuth, PublishersDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


class TickerState(BaseModel):
    enabled: bool
    running: bool
    interval_minutes: int
    jobs: list[dict]


def _ticker_state() -> TickerState:
    settings = get_settings()
    return TickerState(
        enabled=settings.scheduler_enabled,
        running=scheduler_service.is_running(),
        interval_minutes=settings.scheduler_interval_minutes,
        jobs=scheduler_service.list_jobs(),
    )


@router.api_route("/run", methods=["GET", "POST"])
async def run_scheduled(request: Request, session: SessionDep, publishers: PublishersDep):
    """Publish scheduled sub-posts that are due."""
    if not is_authorized_cron(request.headers):
        logger.warning(f"[scheduler] rejected unauthorized cron call from {request.client.host if request.client else '?'}")
        return JSONResponse({"error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED)
    return await run_due_posts(session, publishers=publishers)


@router.get("/status", response_model=TickerState)
async def ticker_status():
    return _ticker_state()


@router.post("/start", response_model=TickerState, dependencies=[OperatorAuth])
async def start_ticker():
    """Start the in-process ticker even when SCHEDULER_ENABLED is off."""
    scheduler_service.start(force=True)
    return _ticker_state()


@router.post("/stop", response_model=TickerState, dependencies=[OperatorAuth])
async def stop_ticker():
    scheduler_service.stop()
    return _ticker_state()


@router.post("/jobs/{job_id}/run", response_model=dict, dependencies=[OperatorAuth])
async def run_tick_now(job_id: str):
    outcome = await scheduler_service.run_now(job_id)
    if "error" in outcome:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=outcome["error"])
    return outcome
