"""Test helpers shared across modules (importable, unlike fixtures)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.models import PlatformPost, Post
from app.services.publisher_adapter import PublishResult

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
VIDEO_URL = "https://cdn.example.com/videos/clip.mp4"


class FakePublisher:
    """Records publish calls; returns a canned result or raises."""

    def __init__(self, platform: str, *, result: PublishResult | None = None, exc: Exception | None = None):
        self.platform = platform
        self.result = result
        self.exc = exc
        self.calls: list[dict[str, Any]] = []

    async def publish(self, credential, target_account_id, media_url, caption, *, ref=None, options=None):
        self.calls.append({
            "credential": credential,
            "target_account_id": target_account_id,
            "media_url": media_url,
            "caption": caption,
            "ref": ref,
            "options": options,
        })
        if self.exc is not None:
            raise self.exc
        if self.result is not None:
            return self.result
        return PublishResult(
            success=True,
            external_id=f"{self.platform}-{len(self.calls)}",
            permalink_url=f"https://{self.platform}.example/p/{len(self.calls)}",
            platform=self.platform,
        )

    def fail_with(self, error: str):
        self.result = PublishResult(success=False, platform=self.platform, error=error)

    def succeed(self):
        self.result = None
        self.exc = None


def by_platform(post: Post) -> dict[str, PlatformPost]:
    return {pp.platform: pp for pp in post.platform_posts}
