"""
Connected accounts and OAuth state nonces.

Tokens are encrypted before they reach the database; nothing in this module
returns or logs a decrypted credential.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import ConnectedAccount, OAuthState, ensure_aware, utcnow
from app.services.errors import AccountNotFound, OAuthStateInvalid, UnsupportedPlatform
from app.services.platform_rules import get_platform_rules, implemented_platforms, is_platform_implemented
from app.services.token_crypto import encrypt_token
from app.settings import get_settings

logger = logging.getLogger(__name__)


def _require_platform(platform: str) -> str:
    platform = (platform or "").lower()
    if not is_platform_implemented(platform):
        raise UnsupportedPlatform(f"Unsupported platform: {platform}")
    return platform


def resolve_account(accounts: Iterable[ConnectedAccount], platform: str) -> ConnectedAccount | None:
    """Primary account for the platform, else any account for it."""
    candidates = [a for a in accounts if a.platform == platform]
    for account in candidates:
        if account.is_primary:
            return account
    return candidates[0] if candidates else None


async def load_accounts(session: AsyncSession, user_id: str) -> list[ConnectedAccount]:
    result = await session.execute(
        select(ConnectedAccount)
        .where(ConnectedAccount.user_id == user_id)
        .order_by(ConnectedAccount.id)
    )
    return list(result.scalars().all())


async def upsert_connected_account(
    session: AsyncSession,
    user_id: str,
    platform: str,
    external_account_id: str,
    access_token: str,
    *,
    refresh_token: str | None = None,
    expires_at: datetime | None = None,
    scopes: list[str] | None = None,
    metadata: dict[str, Any] | None = None,
    display_name: str | None = None,
) -> ConnectedAccount:
    """Store (or refresh) an account keyed by (user, platform, external id).

    The first account connected for a platform becomes its primary.
    """
    platform = _require_platform(platform)
    result = await session.execute(
        select(ConnectedAccount).where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.platform == platform,
            ConnectedAccount.external_account_id == external_account_id,
        )
    )
    account = result.scalar_one_or_none()

    if account is None:
        existing = await session.scalar(
            select(func.count(ConnectedAccount.id)).where(
                ConnectedAccount.user_id == user_id,
                ConnectedAccount.platform == platform,
            )
        )
        account = ConnectedAccount(
            user_id=user_id,
            platform=platform,
            external_account_id=external_account_id,
            is_primary=not existing,
        )
        session.add(account)
        logger.info(f"[accounts] user={user_id} connected {platform}:{external_account_id}")
    else:
        logger.info(f"[accounts] user={user_id} refreshed {platform}:{external_account_id}")

    account.token_encrypted = encrypt_token(access_token)
    account.refresh_token_encrypted = encrypt_token(refresh_token) if refresh_token else None
    account.token_expires_at = expires_at
    account.scopes = scopes
    account.meta = metadata
    if display_name is not None:
        account.display_name = display_name

    await session.commit()
    return account


def _account_summary(account: ConnectedAccount) -> dict[str, Any]:
    return {
        "id": account.id,
        "external_account_id": account.external_account_id,
        "display_name": account.display_name,
        "is_primary": account.is_primary,
        "token_expires_at": account.token_expires_at,
        "scopes": account.scopes or [],
    }


async def list_connections(session: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    """Connection overview per implemented platform."""
    accounts = await load_accounts(session, user_id)
    connections = []
    for platform in implemented_platforms():
        rules = get_platform_rules(platform)
        platform_accounts = [a for a in accounts if a.platform == platform]
        connections.append({
            "platform": platform,
            "display_name": rules.display_name,
            "connected": bool(platform_accounts),
            "accounts": [_account_summary(a) for a in platform_accounts],
        })
    return connections


async def select_primary(session: AsyncSession, user_id: str, platform: str, account_id: int) -> ConnectedAccount:
    platform = _require_platform(platform)
    account = await session.scalar(
        select(ConnectedAccount).where(
            ConnectedAccount.id == account_id,
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.platform == platform,
        )
    )
    if account is None:
        raise AccountNotFound(f"Account {account_id} not found for {platform}")

    await session.execute(
        update(ConnectedAccount)
        .where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.platform == platform,
            ConnectedAccount.id != account_id,
        )
        .values(is_primary=False)
        .execution_options(synchronize_session=False)
    )
    account.is_primary = True
    await session.commit()
    return account


async def disconnect(session: AsyncSession, user_id: str, platform: str, account_id: int | None = None) -> int:
    """Delete one account (or all of a platform). Returns number removed."""
    platform = _require_platform(platform)
    query = select(ConnectedAccount).where(
        ConnectedAccount.user_id == user_id,
        ConnectedAccount.platform == platform,
    )
    if account_id is not None:
        query = query.where(ConnectedAccount.id == account_id)
    targets = list((await session.execute(query)).scalars().all())
    if account_id is not None and not targets:
        raise AccountNotFound(f"Account {account_id} not found for {platform}")

    removed_primary = any(a.is_primary for a in targets)
    for account in targets:
        await session.delete(account)
    await session.flush()

    if removed_primary:
        successor = await session.scalar(
            select(ConnectedAccount)
            .where(ConnectedAccount.user_id == user_id, ConnectedAccount.platform == platform)
            .order_by(ConnectedAccount.id)
            .limit(1)
        )
        if successor is not None:
            successor.is_primary = True
            logger.info(f"[accounts] user={user_id} {platform} primary moved to account={successor.id}")

    await session.commit()
    logger.info(f"[accounts] user={user_id} disconnected {len(targets)} {platform} account(s)")
    return len(targets)


# ── OAuth state ──────────────────────────────────────────────

async def create_oauth_state(
    session: AsyncSession, user_id: str, platform: str, *, now: datetime | None = None
) -> OAuthState:
    platform = _require_platform(platform)
    now = now or utcnow()
    row = OAuthState(
        user_id=user_id,
        platform=platform,
        state=secrets.token_urlsafe(32),
        expires_at=now + timedelta(minutes=get_settings().oauth_state_ttl_minutes),
    )
    session.add(row)
    await session.commit()
    return row


async def consume_oauth_state(
    session: AsyncSession, user_id: str, platform: str, state: str, *, now: datetime | None = None
) -> OAuthState:
    """Validate and delete a state nonce. Single use even when invalid."""
    now = now or utcnow()
    row = await session.scalar(select(OAuthState).where(OAuthState.state == state))
    if row is None:
        raise OAuthStateInvalid("Invalid state")

    await session.delete(row)
    await session.commit()

    if row.user_id != user_id or row.platform != (platform or "").lower():
        raise OAuthStateInvalid("State mismatch")
    if ensure_aware(row.expires_at) < now:
        raise OAuthStateInvalid("State expired")
    return row


async def purge_expired_oauth_states(session: AsyncSession, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = await session.execute(delete(OAuthState).where(OAuthState.expires_at < now))
    await session.commit()
    if result.rowcount:
        logger.info(f"[accounts] purged {result.rowcount} expired oauth states")
    return result.rowcount or 0
