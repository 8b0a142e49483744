from __future__ import annotations

from fastapi import APIRouter

from app.services import account_service
from .deps import SessionDep, UserDep
from .schemas import DisconnectRequest, OAuthStartRead, PlatformConnectionRead, PrimaryRequest

router = APIRouter(prefix="/api/connect", tags=["connect"])


@router.get("/list", response_model=list[PlatformConnectionRead])
async def list_connections(session: SessionDep, user_id: UserDep):
    return await account_service.list_connections(session, user_id)


@router.post("/{platform}/start", response_model=OAuthStartRead)
async def start_connect(platform: str, session: SessionDep, user_id: UserDep):
    """Issue a single-use OAuth state nonce for the platform's consent flow."""
    row = await account_service.create_oauth_state(session, user_id, platform)
    return OAuthStartRead(platform=row.platform, state=row.state, expires_at=row.expires_at)


@router.post("/{platform}/primary")
async def select_primary(platform: str, payload: PrimaryRequest, session: SessionDep, user_id: UserDep):
    account = await account_service.select_primary(session, user_id, platform, payload.account_id)
    return {"ok": True, "platform": account.platform, "account_id": account.id}


@router.post("/{platform}/disconnect")
async def disconnect(
    platform: str,
    session: SessionDep,
    user_id: UserDep,
    payload: DisconnectRequest | None = None,
):
    removed = await account_service.disconnect(
        session, user_id, platform, payload.account_id if payload else None
    )
    return {"ok": True, "platform": platform.lower(), "removed": removed}
