"""
Unified publishing layer for destination platforms.

Each platform adapter implements the `PublisherAdapter` interface:
    publish(credential, target_account_id, media_url, caption) -> PublishResult

Every adapter follows the vendor's three-phase protocol:
submit (container / upload job) -> poll readiness -> commit, then a
best-effort permalink lookup. Results (including errors and timeouts) are
always returned explicitly; adapters never raise for vendor failures.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from app.services.platform_rules import PlatformRules, get_platform_rules, validate_caption_length
from app.settings import get_settings

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


# ── Result dataclass ─────────────────────────────────────────

# Errors that look transient (network, rate-limit). Informational only:
# nothing is retried automatically.
RETRYABLE_INDICATORS = (
    "timeout", "timed out", "429", "too many requests",
    "502", "503", "504", "connection", "reset by peer",
    "temporary", "service unavailable", "rate limit",
    "network", "ssl", "eof", "broken pipe",
)


def _is_retryable_error(error: str | None) -> bool:
    """Determine if an error message indicates a transient failure."""
    if not error:
        return False
    lower = error.lower()
    return any(ind in lower for ind in RETRYABLE_INDICATORS)


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    # Generic long opaque tokens (40+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]

_SENSITIVE_KEYS = {"access_token", "refresh_token", "client_secret", "authorization", "upload_url"}


def _sanitize(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _sanitize_dict(d: dict | None) -> dict | None:
    """Mask sensitive keys in a vendor response before it is kept around."""
    if not d:
        return d
    cleaned: dict[str, Any] = {}
    for k, v in d.items():
        if k.lower() in _SENSITIVE_KEYS:
            cleaned[k] = "***"
        elif isinstance(v, dict):
            cleaned[k] = _sanitize_dict(v)
        else:
            cleaned[k] = v
    return cleaned


@dataclass
class PublishResult:
    """Normalized result of one publish attempt."""
    success: bool
    external_id: str | None = None
    permalink_url: str | None = None
    platform: str | None = None
    error: str | None = None
    retryable: bool = False
    raw_response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "external_id": self.external_id,
            "permalink_url": self.permalink_url,
            "platform": self.platform,
            "error": self.error,
            "retryable": self.retryable,
        }


def _graph_error(data: dict) -> str | None:
    err = data.get("error")
    if not err:
        return None
    if isinstance(err, dict):
        return err.get("message") or err.get("type") or str(err)
    return str(err)


async def _read_json(resp: httpx.Response) -> dict:
    """Decode a vendor response; non-JSON bodies become an error payload."""
    try:
        data = resp.json()
    except ValueError:
        return {"error": {"message": f"HTTP {resp.status_code}: {resp.text[:300]}"}}
    if not isinstance(data, dict):
        data = {"data": data}
    if resp.status_code >= 400 and "error" not in data:
        data["error"] = {"message": f"HTTP {resp.status_code}: {resp.text[:300]}"}
    return data


# ── Abstract adapter ─────────────────────────────────────────

class PublisherAdapter(abc.ABC):
    """Base class for platform-specific publishers."""

    platform: str = "unknown"
    display_name: str = "Unknown"

    def __init__(
        self,
        rules: PlatformRules | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc | None = None,
        timeout: float | None = None,
    ):
        self.rules = rules if rules is not None else get_platform_rules(self.platform)
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._timeout = timeout if timeout is not None else get_settings().http_timeout_sec

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _log(self, ref: Any, msg: str):
        logger.info(f"[{self.display_name}][pp={ref}] {msg}")

    def _warn(self, ref: Any, msg: str):
        logger.warning(f"[{self.display_name}][pp={ref}] {msg}")

    def _error(self, ref: Any, msg: str):
        logger.error(f"[{self.display_name}][pp={ref}] {msg}")

    def _fail(self, ref: Any, msg: str, raw: dict | None = None) -> PublishResult:
        msg = _sanitize(msg) or f"{self.display_name} publish failed"
        self._error(ref, msg)
        return PublishResult(
            success=False,
            platform=self.platform,
            error=msg,
            retryable=_is_retryable_error(msg),
            raw_response=_sanitize_dict(raw) or {},
        )

    def check_caption(self, caption: str) -> str | None:
        """Return an error message when the caption breaks the platform limit."""
        if self.rules is None:
            return None
        check = validate_caption_length(self.platform, caption)
        if not check.valid:
            return f"Caption exceeds {check.max_chars} characters"
        return None

    async def publish(
        self,
        credential: str,
        target_account_id: str,
        media_url: str,
        caption: str,
        *,
        ref: Any = None,
        options: dict | None = None,
    ) -> PublishResult:
        """Publish a publicly reachable video. Never raises for vendor failures."""
        caption = caption or ""
        caption_error = self.check_caption(caption)
        if caption_error:
            return self._fail(ref, caption_error)
        try:
            return await self._publish(
                credential, target_account_id, media_url, caption, ref=ref, options=options or {}
            )
        except Exception as exc:
            return self._fail(ref, f"{self.display_name} publish error: {exc}")

    @abc.abstractmethod
    async def _publish(
        self,
        credential: str,
        target_account_id: str,
        media_url: str,
        caption: str,
        *,
        ref: Any,
        options: dict,
    ) -> PublishResult:
        ...


# ── Instagram Reels ──────────────────────────────────────────

class InstagramPublisher(PublisherAdapter):
    """Graph API Reels flow: /media (REELS container) -> poll status_code -> /media_publish."""

    platform = "instagram"
    display_name = "Instagram"

    def __init__(
        self,
        rules: PlatformRules | None = None,
        *,
        graph_base: str | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        **kwargs,
    ):
        super().__init__(rules, **kwargs)
        settings = get_settings()
        self.graph_base = (graph_base or settings.graph_api_base).rstrip("/")
        self.poll_interval = poll_interval if poll_interval is not None else settings.meta_poll_interval_sec
        self.max_attempts = max_attempts if max_attempts is not None else settings.meta_poll_max_attempts

    async def _publish(self, credential, target_account_id, media_url, caption, *, ref, options):
        async with self._client() as client:
            # Step 1: create REELS container
            self._log(ref, f"Creating container for account {target_account_id}")
            container_resp = await client.post(
                f"{self.graph_base}/{target_account_id}/media",
                params={
                    "media_type": "REELS",
                    "video_url": media_url,
                    "caption": caption,
                    "access_token": credential,
                },
            )
            container = await _read_json(container_resp)
            err = _graph_error(container)
            if err:
                return self._fail(ref, err, container)
            container_id = container.get("id")
            if not container_id:
                return self._fail(ref, "No container ID returned from Instagram", container)

            # Step 2: wait for FINISHED
            self._log(ref, f"Container {container_id} created, polling status")
            ready, wait_error = await self._wait_for_container(client, credential, container_id, ref)
            if not ready:
                return self._fail(ref, wait_error or "Container processing failed")

            # Step 3: publish container
            publish_resp = await client.post(
                f"{self.graph_base}/{target_account_id}/media_publish",
                params={"creation_id": container_id, "access_token": credential},
            )
            published = await _read_json(publish_resp)
            err = _graph_error(published)
            if err:
                return self._fail(ref, err, published)
            media_id = published.get("id")
            if not media_id:
                return self._fail(ref, "Instagram did not return a media ID", published)

            permalink = await self._get_permalink(client, credential, media_id)
            self._log(ref, f"Published media {media_id}: {permalink}")
            return PublishResult(
                success=True,
                external_id=str(media_id),
                permalink_url=permalink,
                platform=self.platform,
                raw_response={"container_id": container_id, "media_id": media_id},
            )

    async def _wait_for_container(
        self, client: httpx.AsyncClient, credential: str, container_id: str, ref: Any
    ) -> tuple[bool, str | None]:
        for attempt in range(1, self.max_attempts + 1):
            resp = await client.get(
                f"{self.graph_base}/{container_id}",
                params={"fields": "status_code,status", "access_token": credential},
            )
            data = await _read_json(resp)
            err = _graph_error(data)
            if err:
                return False, err

            status_code = data.get("status_code")
            logger.debug(f"[Instagram][pp={ref}] Container status check {attempt}: {status_code}")
            if status_code == "FINISHED":
                return True, None
            if status_code in ("ERROR", "EXPIRED"):
                return False, data.get("status") or "Container failed"

            if attempt < self.max_attempts:
                await self._sleep(self.poll_interval)

        return False, "Container processing timeout"

    async def _get_permalink(self, client: httpx.AsyncClient, credential: str, media_id: str) -> str | None:
        try:
            resp = await client.get(
                f"{self.graph_base}/{media_id}",
                params={"fields": "permalink", "access_token": credential},
            )
            data = await _read_json(resp)
            return data.get("permalink")
        except Exception as exc:
            logger.warning(f"[Instagram] permalink lookup failed for {media_id}: {_sanitize(str(exc))}")
            return None


# ── Facebook Page video ──────────────────────────────────────

class FacebookPublisher(PublisherAdapter):
    """Page /videos upload by remote file_url.

    Readiness is best-effort: Facebook often finishes processing after the
    upload was accepted, so a returned video id is treated as success even
    when polling never sees `ready`.
    """

    platform = "facebook"
    display_name = "Facebook"

    def __init__(
        self,
        rules: PlatformRules | None = None,
        *,
        graph_base: str | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        **kwargs,
    ):
        super().__init__(rules, **kwargs)
        settings = get_settings()
        self.graph_base = (graph_base or settings.graph_api_base).rstrip("/")
        self.poll_interval = poll_interval if poll_interval is not None else settings.meta_poll_interval_sec
        self.max_attempts = max_attempts if max_attempts is not None else settings.meta_poll_max_attempts

    async def _publish(self, credential, target_account_id, media_url, caption, *, ref, options):
        async with self._client() as client:
            self._log(ref, f"Submitting video to page {target_account_id}")
            upload_resp = await client.post(
                f"{self.graph_base}/{target_account_id}/videos",
                params={
                    "file_url": media_url,
                    "description": caption,
                    "access_token": credential,
                },
            )
            upload = await _read_json(upload_resp)
            err = _graph_error(upload)
            if err:
                return self._fail(ref, err, upload)
            video_id = upload.get("id")
            if not video_id:
                return self._fail(ref, "No video ID returned from Facebook", upload)

            try:
                ready, wait_error = await self._wait_for_video(client, credential, video_id, ref)
            except httpx.HTTPError as exc:
                ready, wait_error = False, _sanitize(str(exc))
            if not ready:
                self._warn(ref, f"Video {video_id} not ready ({wait_error}), upload was accepted")

            permalink = await self._get_permalink(client, credential, video_id)
            self._log(ref, f"Published video {video_id}: {permalink}")
            return PublishResult(
                success=True,
                external_id=str(video_id),
                permalink_url=permalink,
                platform=self.platform,
                raw_response={"video_id": video_id, "ready": ready},
            )

    async def _wait_for_video(
        self, client: httpx.AsyncClient, credential: str, video_id: str, ref: Any
    ) -> tuple[bool, str | None]:
        for attempt in range(1, self.max_attempts + 1):
            resp = await client.get(
                f"{self.graph_base}/{video_id}",
                params={"fields": "status", "access_token": credential},
            )
            data = await _read_json(resp)
            err = _graph_error(data)
            if err:
                return False, err

            video_status = (data.get("status") or {}).get("video_status")
            logger.debug(f"[Facebook][pp={ref}] Video status check {attempt}: {video_status}")
            if video_status == "ready":
                return True, None
            if video_status == "error":
                return False, "Video processing failed"

            if attempt < self.max_attempts:
                await self._sleep(self.poll_interval)

        return False, "Video processing timeout"

    async def _get_permalink(self, client: httpx.AsyncClient, credential: str, video_id: str) -> str | None:
        try:
            resp = await client.get(
                f"{self.graph_base}/{video_id}",
                params={"fields": "permalink_url", "access_token": credential},
            )
            data = await _read_json(resp)
            link = data.get("permalink_url")
        except Exception as exc:
            logger.warning(f"[Facebook] permalink lookup failed for {video_id}: {_sanitize(str(exc))}")
            return None
        if link and link.startswith("/"):
            link = f"https://www.facebook.com{link}"
        return link


# ── TikTok Content Posting API ───────────────────────────────

class TikTokPublisher(PublisherAdapter):
    """PULL_FROM_URL init -> status/fetch polling with exponential backoff.

    Posts directly, or to the creator's inbox (drafts) when the account's
    metadata carries post_to_inbox / TIKTOK_POST_TO_INBOX is set.
    """

    platform = "tiktok"
    display_name = "TikTok"

    DIRECT_INIT = "/post/publish/video/init/"
    INBOX_INIT = "/post/publish/inbox/video/init/"
    STATUS_FETCH = "/post/publish/status/fetch/"

    SUCCESS_STATES = ("PUBLISH_COMPLETE", "SEND_TO_USER_INBOX")

    def __init__(
        self,
        rules: PlatformRules | None = None,
        *,
        api_base: str | None = None,
        initial_delay: float | None = None,
        backoff_factor: float | None = None,
        max_delay: float | None = None,
        max_attempts: int | None = None,
        post_to_inbox: bool | None = None,
        **kwargs,
    ):
        super().__init__(rules, **kwargs)
        settings = get_settings()
        self.api_base = (api_base or settings.tiktok_api_base).rstrip("/")
        self.initial_delay = initial_delay if initial_delay is not None else settings.tiktok_poll_initial_delay_sec
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.tiktok_poll_backoff_factor
        self.max_delay = max_delay if max_delay is not None else settings.tiktok_poll_max_delay_sec
        self.max_attempts = max_attempts if max_attempts is not None else settings.tiktok_poll_max_attempts
        self.post_to_inbox = post_to_inbox if post_to_inbox is not None else settings.tiktok_post_to_inbox

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json; charset=UTF-8",
        }

    @staticmethod
    def _api_error(data: dict) -> str | None:
        err = data.get("error")
        if not err:
            return None
        if isinstance(err, dict):
            if err.get("code") in (None, "", "ok"):
                return None
            return err.get("message") or err.get("code")
        return str(err)

    async def _publish(self, credential, target_account_id, media_url, caption, *, ref, options):
        to_inbox = bool(options.get("post_to_inbox", self.post_to_inbox))
        endpoint = self.INBOX_INIT if to_inbox else self.DIRECT_INIT
        body = {
            "post_info": {
                "title": caption,
                "privacy_level": options.get("privacy_level", "SELF_ONLY"),
                "disable_duet": False,
                "disable_comment": False,
                "disable_stitch": False,
            },
            "source_info": {
                "source": "PULL_FROM_URL",
                "video_url": media_url,
            },
        }

        async with self._client() as client:
            self._log(ref, f"Init {'inbox' if to_inbox else 'direct'} upload")
            init_resp = await client.post(f"{self.api_base}{endpoint}", headers=self._headers(credential), json=body)
            init = await _read_json(init_resp)
            err = self._api_error(init)
            if err:
                return self._fail(ref, err, init)
            publish_id = (init.get("data") or {}).get("publish_id")
            if not publish_id:
                return self._fail(ref, "No publish ID returned from TikTok", init)

            final, wait_error = await self._wait_for_publish(client, credential, publish_id, ref)
            if wait_error:
                return self._fail(ref, wait_error, {"publish_id": publish_id})

            post_ids = final.get("publicaly_available_post_id") or []
            external_id = str(post_ids[0]) if post_ids else str(publish_id)
            username = options.get("username")
            url = f"https://www.tiktok.com/@{username}/video/{post_ids[0]}" if post_ids and username else None

            self._log(ref, f"Finished with {final.get('status')} (publish_id={publish_id})")
            return PublishResult(
                success=True,
                external_id=external_id,
                permalink_url=url,
                platform=self.platform,
                raw_response={"publish_id": publish_id, "status": final.get("status")},
            )

    async def _wait_for_publish(
        self, client: httpx.AsyncClient, credential: str, publish_id: str, ref: Any
    ) -> tuple[dict, str | None]:
        delay = self.initial_delay
        for attempt in range(1, self.max_attempts + 1):
            resp = await client.post(
                f"{self.api_base}{self.STATUS_FETCH}",
                headers=self._headers(credential),
                json={"publish_id": publish_id},
            )
            data = await _read_json(resp)
            err = self._api_error(data)
            if err:
                return {}, err

            status_data = data.get("data") or {}
            status = status_data.get("status")
            logger.debug(f"[TikTok][pp={ref}] Status check {attempt}: {status}")
            if status in self.SUCCESS_STATES:
                return status_data, None
            if status == "FAILED":
                return status_data, status_data.get("fail_reason") or "Video publish failed"

            if attempt < self.max_attempts:
                await self._sleep(delay)
                delay = min(delay * self.backoff_factor, self.max_delay)

        return {}, "Publish status check timed out"


# ── Registry ──────────────────────────────────────────────────

def build_publishers(
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: SleepFunc | None = None,
) -> dict[str, PublisherAdapter]:
    """Instantiate one adapter per implemented platform."""
    return {
        "instagram": InstagramPublisher(transport=transport, sleep=sleep),
        "facebook": FacebookPublisher(transport=transport, sleep=sleep),
        "tiktok": TikTokPublisher(transport=transport, sleep=sleep),
    }


_ADAPTERS: dict[str, PublisherAdapter] = build_publishers()


def get_publisher(platform: str) -> PublisherAdapter | None:
    """Get publisher adapter for a given platform (case-insensitive)."""
    return _ADAPTERS.get(platform.lower())


def list_publishers() -> list[str]:
    """List all registered platform adapters."""
    return list(_ADAPTERS.keys())
