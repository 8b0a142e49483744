from __future__ import annotations

from typing import Annotated, Mapping

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .services.errors import (
    AccountNotFound,
    ConfigurationError,
    InvalidPostState,
    PostNotFound,
    PublishingError,
)
from .services.publisher_adapter import PublisherAdapter
from .services.scheduler_trigger import is_authorized_cron

SessionDep = Annotated[AsyncSession, Depends(get_session)]


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Tenant id forwarded by the authenticating proxy."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id.strip()


UserDep = Annotated[str, Depends(get_user_id)]


def require_operator(request: Request) -> None:
    """Cron / operator credentials for endpoints that act across tenants."""
    if not is_authorized_cron(request.headers):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


OperatorAuth = Depends(require_operator)


def get_publishers() -> Mapping[str, PublisherAdapter] | None:
    """Adapter registry override point; None means the module registry."""
    return None


PublishersDep = Annotated[Mapping[str, PublisherAdapter] | None, Depends(get_publishers)]


def error_status(exc: PublishingError) -> int:
    if isinstance(exc, (PostNotFound, AccountNotFound)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, InvalidPostState):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ConfigurationError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST
