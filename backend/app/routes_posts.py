"""
Post API Routes

Drafts, captions, scheduling, immediate publish, retry, cancel and the
per-user publishing queue. The tenant is taken from the X-User-Id header.
"""
from __future__ import annotations

from fastapi import APIRouter, Query, status

from app.services import post_service
from app.services.publish_coordinator import PublishCoordinator
from .deps import PublishersDep, SessionDep, UserDep
from .schemas import (
    CaptionsUpdate,
    PostCreate,
    PostRead,
    PublishSummaryRead,
    QueueItemRead,
    RetryRequest,
    ScheduleRequest,
)

router = APIRouter(prefix="/api/posts", tags=["posts"])
queue_router = APIRouter(prefix="/api/queue", tags=["posts"])


@router.post("", response_model=PostRead, status_code=status.HTTP_201_CREATED)
async def create_post(payload: PostCreate, session: SessionDep, user_id: UserDep):
    return await post_service.create_draft(
        session,
        user_id,
        asset_id=payload.asset_id,
        context=payload.context.model_dump(exclude_none=True),
        platforms=payload.platforms,
    )


@router.get("", response_model=list[PostRead])
async def list_posts(
    session: SessionDep,
    user_id: UserDep,
    status_filter: str | None = Query(default=None, alias="status"),
):
    return await post_service.list_posts(session, user_id, status=status_filter)


@router.get("/{post_id}", response_model=PostRead)
async def get_post(post_id: int, session: SessionDep, user_id: UserDep):
    return await post_service.get_post(session, user_id, post_id)


@router.post("/{post_id}/captions", response_model=PostRead)
async def select_captions(post_id: int, payload: CaptionsUpdate, session: SessionDep, user_id: UserDep):
    return await post_service.select_captions(session, user_id, post_id, payload.captions)


@router.post("/{post_id}/schedule", response_model=PostRead)
async def schedule_post(post_id: int, payload: ScheduleRequest, session: SessionDep, user_id: UserDep):
    return await post_service.schedule_post(
        session, user_id, post_id, payload.scheduled_for, payload.timezone
    )


@router.post("/{post_id}/publish-now", response_model=PublishSummaryRead)
async def publish_now(post_id: int, session: SessionDep, user_id: UserDep, publishers: PublishersDep):
    """Publish every not-yet-published platform of the post immediately."""
    coordinator = PublishCoordinator(session, publishers=publishers)
    summary = await coordinator.publish_now(post_id, user_id)
    return summary.to_dict()


@router.post("/{post_id}/retry", response_model=PublishSummaryRead)
async def retry_post(
    post_id: int,
    session: SessionDep,
    user_id: UserDep,
    publishers: PublishersDep,
    payload: RetryRequest | None = None,
):
    """Retry failed platforms only (optionally a subset)."""
    coordinator = PublishCoordinator(session, publishers=publishers)
    summary = await coordinator.retry(post_id, user_id, payload.platforms if payload else None)
    return summary.to_dict()


@router.post("/{post_id}/cancel", response_model=PostRead)
async def cancel_post(post_id: int, session: SessionDep, user_id: UserDep):
    return await post_service.cancel_post(session, user_id, post_id)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(post_id: int, session: SessionDep, user_id: UserDep):
    await post_service.delete_post(session, user_id, post_id)


@queue_router.get("", response_model=list[QueueItemRead])
async def list_queue(session: SessionDep, user_id: UserDep):
    return await post_service.list_queue(session, user_id)
