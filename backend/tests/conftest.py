"""Shared test fixtures.

Every test gets a fresh in-memory SQLite database (aiosqlite + StaticPool),
a deterministic token encryption key, and fake publishers that record their
calls instead of talking to vendor APIs.
"""

from __future__ import annotations

import os

# Settings are read at import time by app.db; configure before importing app.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["TOKEN_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ.pop("TELEGRAM_BOT_TOKEN", None)

from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from sqlalchemy.pool import StaticPool

from app.db import Base, build_engine, build_session_factory
from app.models import Asset, PlatformPost, Post
from app.services import notify
from app.services.account_service import upsert_connected_account
from app.settings import get_settings
from helpers import VIDEO_URL, FakePublisher


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    notify.reset_throttle()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine():
    eng = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def fake_publishers() -> dict[str, FakePublisher]:
    return {p: FakePublisher(p) for p in ("instagram", "facebook", "tiktok")}


@pytest.fixture
def make_post(session):
    """Insert a post with sub-posts directly (bypassing lifecycle checks)."""

    async def _make(
        *,
        user_id: str = "user-1",
        platforms: tuple[str, ...] = ("instagram", "facebook"),
        status: str = "draft",
        sub_status: str | dict[str, str] = "draft",
        public_url: str | None = VIDEO_URL,
        scheduled_for: datetime | None = None,
        caption: str = "Launch day #reels",
    ) -> int:
        asset_id = None
        if public_url is not None:
            asset = Asset(user_id=user_id, storage_key="videos/clip.mp4", public_url=public_url)
            session.add(asset)
            await session.flush()
            asset_id = asset.id

        post = Post(
            user_id=user_id,
            asset_id=asset_id,
            context={"topic": "launch"},
            status=status,
            scheduled_for=scheduled_for,
        )
        session.add(post)
        await session.flush()

        for platform in platforms:
            pp_status = sub_status.get(platform, "draft") if isinstance(sub_status, dict) else sub_status
            session.add(PlatformPost(
                post_id=post.id,
                platform=platform,
                status=pp_status,
                caption_selected=caption,
                caption_final=caption,
                scheduled_for=scheduled_for,
            ))
        await session.commit()
        return post.id

    return _make


@pytest.fixture
def connect(session):
    """Connect an account whose access token is `<platform>-token`."""

    async def _connect(platform: str, *, user_id: str = "user-1", external_id: str | None = None, **kwargs):
        return await upsert_connected_account(
            session,
            user_id,
            platform,
            external_id or f"{platform}-acct",
            f"{platform}-token",
            **kwargs,
        )

    return _connect


@pytest.fixture
def load_post(session):
    async def _load(post_id: int) -> Post:
        return await session.scalar(
            select(Post)
            .where(Post.id == post_id)
            .options(selectinload(Post.platform_posts))
            .execution_options(populate_existing=True)
        )

    return _load
