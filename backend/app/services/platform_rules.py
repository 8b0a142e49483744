"""
Platform capability registry.

Static per-platform limits (caption length, hashtags, video constraints) kept
as data so adapters receive them by injection. Adding a platform means adding
a record here plus an adapter in publisher_adapter.py.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

MB = 1024 * 1024

_HASHTAG_RE = re.compile(r"#\w+")


@dataclass(frozen=True)
class CaptionRules:
    max_chars: int
    recommended_chars: int
    max_hashtags: int
    recommended_hashtags: int = 3
    supports_hashtags: bool = True


@dataclass(frozen=True)
class VideoRules:
    min_duration: float
    max_duration: float
    max_file_size_bytes: int
    mime_types: tuple[str, ...] = ("video/mp4", "video/quicktime")


@dataclass(frozen=True)
class PlatformRules:
    platform: str
    display_name: str
    implemented: bool
    caption: CaptionRules
    video: VideoRules
    features: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptionCheck:
    valid: bool
    char_count: int
    max_chars: int | None
    over_limit: int


PLATFORM_RULES: dict[str, PlatformRules] = {
    "instagram": PlatformRules(
        platform="instagram",
        display_name="Instagram",
        implemented=True,
        caption=CaptionRules(max_chars=2200, recommended_chars=150, max_hashtags=30, recommended_hashtags=5),
        video=VideoRules(min_duration=3, max_duration=900, max_file_size_bytes=1024 * MB),
        features={"reels": True, "requires_business_account": True},
    ),
    "facebook": PlatformRules(
        platform="facebook",
        display_name="Facebook",
        implemented=True,
        caption=CaptionRules(max_chars=63206, recommended_chars=250, max_hashtags=30, recommended_hashtags=3),
        video=VideoRules(min_duration=1, max_duration=14400, max_file_size_bytes=10 * 1024 * MB),
        features={"requires_page": True},
    ),
    "tiktok": PlatformRules(
        platform="tiktok",
        display_name="TikTok",
        implemented=True,
        caption=CaptionRules(max_chars=2200, recommended_chars=150, max_hashtags=30, recommended_hashtags=4),
        video=VideoRules(
            min_duration=3,
            max_duration=600,
            max_file_size_bytes=287 * MB,
            mime_types=("video/mp4", "video/webm", "video/quicktime"),
        ),
        features={"direct_post": True, "inbox_post": True},
    ),
    "linkedin": PlatformRules(
        platform="linkedin",
        display_name="LinkedIn",
        implemented=False,
        caption=CaptionRules(max_chars=3000, recommended_chars=200, max_hashtags=10),
        video=VideoRules(min_duration=3, max_duration=600, max_file_size_bytes=5 * 1024 * MB),
    ),
    "youtube": PlatformRules(
        platform="youtube",
        display_name="YouTube",
        implemented=False,
        caption=CaptionRules(max_chars=5000, recommended_chars=300, max_hashtags=15),
        video=VideoRules(min_duration=1, max_duration=43200, max_file_size_bytes=256 * 1024 * MB),
    ),
}


def get_platform_rules(platform: str) -> PlatformRules | None:
    return PLATFORM_RULES.get((platform or "").lower())


def implemented_platforms() -> list[str]:
    return [name for name, rules in PLATFORM_RULES.items() if rules.implemented]


def is_platform_implemented(platform: str) -> bool:
    rules = get_platform_rules(platform)
    return bool(rules and rules.implemented)


def validate_caption_length(platform: str, caption: str) -> CaptionCheck:
    caption = caption or ""
    rules = get_platform_rules(platform)
    if rules is None:
        return CaptionCheck(valid=True, char_count=len(caption), max_chars=None, over_limit=0)
    max_chars = rules.caption.max_chars
    over = max(0, len(caption) - max_chars)
    return CaptionCheck(valid=over == 0, char_count=len(caption), max_chars=max_chars, over_limit=over)


def count_hashtags(caption: str) -> int:
    return len(_HASHTAG_RE.findall(caption or ""))


def validate_hashtag_count(platform: str, caption: str) -> tuple[bool, int]:
    """Return (valid, count) for the caption's hashtags."""
    rules = get_platform_rules(platform)
    count = count_hashtags(caption)
    if rules is None:
        return True, count
    return count <= rules.caption.max_hashtags, count


def validate_video(
    platform: str,
    *,
    duration_seconds: float | None = None,
    mime: str | None = None,
    size_bytes: int | None = None,
) -> list[str]:
    """Check media against platform limits. Returns human-readable errors."""
    rules = get_platform_rules(platform)
    if rules is None:
        return []
    video = rules.video
    errors: list[str] = []
    if duration_seconds is not None:
        if duration_seconds < video.min_duration:
            errors.append(f"Video too short. Minimum duration is {video.min_duration:g} seconds.")
        if duration_seconds > video.max_duration:
            errors.append(f"Video too long. Maximum duration is {video.max_duration:g} seconds.")
    if size_bytes is not None and size_bytes > video.max_file_size_bytes:
        errors.append(f"Video file too large. Maximum size is {video.max_file_size_bytes // MB}MB.")
    if mime and mime not in video.mime_types:
        errors.append(f"Unsupported video format {mime} for {rules.display_name}.")
    return errors
