from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _normalize_platform(value: str) -> str:
    return value.strip().lower()


class PostContext(BaseModel):
    topic: str | None = None
    target_audience: str | None = None
    cta: str | None = None
    tone: str | None = None
    location: str | None = None
    brand_voice: str | None = None


class PostCreate(BaseModel):
    asset_id: int | None = None
    context: PostContext = Field(default_factory=PostContext)
    platforms: list[str] = Field(min_length=1)

    @field_validator("platforms")
    @classmethod
    def normalize_platforms(cls, value: list[str]) -> list[str]:
        return [_normalize_platform(p) for p in value]


class PlatformPostRead(BaseModel):
    id: int
    post_id: int
    platform: str
    status: str
    caption_selected: str | None = None
    caption_final: str | None = None
    scheduled_for: datetime | None = None
    started_at: datetime | None = None
    published_at: datetime | None = None
    external_post_id: str | None = None
    external_url: str | None = None
    attempts: int = 0
    last_error: str | None = None

    class Config:
        from_attributes = True


class PostRead(BaseModel):
    id: int
    user_id: str
    asset_id: int | None = None
    context: dict[str, Any] | None = None
    status: str
    scheduled_for: datetime | None = None
    timezone: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    platform_posts: list[PlatformPostRead] = []

    class Config:
        from_attributes = True


class CaptionsUpdate(BaseModel):
    captions: dict[str, str]

    @field_validator("captions")
    @classmethod
    def normalize_keys(cls, value: dict[str, str]) -> dict[str, str]:
        return {_normalize_platform(k): v for k, v in value.items()}


class ScheduleRequest(BaseModel):
    scheduled_for: datetime
    timezone: str | None = None


class RetryRequest(BaseModel):
    platforms: list[str] | None = None


class SubPostResultRead(BaseModel):
    platform_post_id: int
    post_id: int
    platform: str
    success: bool
    error: str | None = None
    external_id: str | None = None
    external_url: str | None = None
    skipped: bool = False


class PublishSummaryRead(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int
    results: list[SubPostResultRead]
    post_status: str | None = None


class QueueItemRead(BaseModel):
    platform_post_id: int
    post_id: int
    platform: str
    status: str
    scheduled_for: datetime | None = None
    caption: str | None = None
    attempts: int
    last_error: str | None = None
    post_status: str
    context: dict[str, Any] = {}


class ConnectedAccountRead(BaseModel):
    id: int
    external_account_id: str
    display_name: str | None = None
    is_primary: bool
    token_expires_at: datetime | None = None
    scopes: list[str] = []


class PlatformConnectionRead(BaseModel):
    platform: str
    display_name: str
    connected: bool
    accounts: list[ConnectedAccountRead]


class PrimaryRequest(BaseModel):
    account_id: int


class DisconnectRequest(BaseModel):
    account_id: int | None = None


class OAuthStartRead(BaseModel):
    platform: str
    state: str
    expires_at: datetime
