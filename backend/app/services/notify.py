"""
Operator alerts via Telegram, throttled per title.

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

The same (level, title) pair is sent at most once per 15 minutes, so a
scheduler failing every minute produces one message, not sixty.
"""
from __future__ import annotations

import html
import logging
import time
from typing import Any

import httpx

from app.settings import get_settings

logger = logging.getLogger(__name__)

THROTTLE_SEC = 15 * 60
LEVEL_ICONS = {"error": "🔴", "warn": "🟡"}

_last_sent: dict[str, float] = {}


def _should_send(key: str) -> bool:
    now = time.monotonic()
    last = _last_sent.get(key)
    if last is not None and now - last < THROTTLE_SEC:
        return False
    _last_sent[key] = now
    return True


def reset_throttle():
    _last_sent.clear()


def _format(level: str, title: str, payload: Any) -> str:
    body = f"{LEVEL_ICONS[level]} <b>{html.escape(title)}</b>"
    if payload:
        body += f"\n<pre>{html.escape(str(payload)[:500])}</pre>"
    return body


async def _send_telegram(text: str, *, transport: httpx.AsyncBaseTransport | None = None) -> bool:
    settings = get_settings()
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{settings.telegram_bot_token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            r = await client.post(url, json={
                "chat_id": settings.telegram_chat_id,
                "text": text[:4000],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
    except httpx.HTTPError as e:
        # alerting never raises into the caller
        logger.warning(f"[notify] Telegram send failed: {e.__class__.__name__}")
        return False
    if r.status_code != 200:
        logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
        return False
    return True


async def _notify(level: str, title: str, payload: Any, transport: httpx.AsyncBaseTransport | None) -> bool:
    if not _should_send(f"{level}:{title}"):
        logger.debug(f"[notify] throttled {level}: {title}")
        return False
    return await _send_telegram(_format(level, title, payload), transport=transport)


async def notify_error(title: str, payload: Any = None, *, transport: httpx.AsyncBaseTransport | None = None) -> bool:
    """Send error-level alert (throttled by title)."""
    return await _notify("error", title, payload, transport)


async def notify_warn(title: str, payload: Any = None, *, transport: httpx.AsyncBaseTransport | None = None) -> bool:
    """Send warning-level alert (throttled by title)."""
    return await _notify("warn", title, payload, transport)
