from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "crosspost"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "CROSSPOST_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/crosspost",
        validation_alias=AliasChoices("DATABASE_URL", "CROSSPOST_DATABASE_URL"),
    )
    token_encryption_key: str | None = Field(default=None, validation_alias=AliasChoices("TOKEN_ENCRYPTION_KEY", "CROSSPOST_TOKEN_ENCRYPTION_KEY"))
    cron_secret: str | None = Field(default=None, validation_alias=AliasChoices("CRON_SECRET", "CROSSPOST_CRON_SECRET"))
    cron_header_name: str = Field(default="x-vercel-cron", validation_alias=AliasChoices("CRON_HEADER_NAME", "CROSSPOST_CRON_HEADER_NAME"))
    scheduler_secret: str | None = Field(default=None, validation_alias=AliasChoices("SCHEDULER_SECRET", "CROSSPOST_SCHEDULER_SECRET"))
    scheduler_batch_size: int = Field(default=10, validation_alias=AliasChoices("SCHEDULER_BATCH_SIZE", "CROSSPOST_SCHEDULER_BATCH_SIZE"))
    scheduler_enabled: bool = Field(default=False, validation_alias=AliasChoices("SCHEDULER_ENABLED", "CROSSPOST_SCHEDULER_ENABLED"))
    scheduler_interval_minutes: int = Field(default=1, validation_alias=AliasChoices("SCHEDULER_INTERVAL_MINUTES", "CROSSPOST_SCHEDULER_INTERVAL_MINUTES"))
    graph_api_base: str = Field(default="https://graph.facebook.com/v18.0", validation_alias=AliasChoices("GRAPH_API_BASE", "CROSSPOST_GRAPH_API_BASE"))
    tiktok_api_base: str = Field(default="https://open.tiktokapis.com/v2", validation_alias=AliasChoices("TIKTOK_API_BASE", "CROSSPOST_TIKTOK_API_BASE"))
    meta_poll_interval_sec: float = Field(default=5.0, validation_alias=AliasChoices("META_POLL_INTERVAL_SEC", "CROSSPOST_META_POLL_INTERVAL_SEC"))
    meta_poll_max_attempts: int = Field(default=60, validation_alias=AliasChoices("META_POLL_MAX_ATTEMPTS", "CROSSPOST_META_POLL_MAX_ATTEMPTS"))
    tiktok_poll_initial_delay_sec: float = Field(default=2.0, validation_alias=AliasChoices("TIKTOK_POLL_INITIAL_DELAY_SEC", "CROSSPOST_TIKTOK_POLL_INITIAL_DELAY_SEC"))
    tiktok_poll_backoff_factor: float = Field(default=1.5, validation_alias=AliasChoices("TIKTOK_POLL_BACKOFF_FACTOR", "CROSSPOST_TIKTOK_POLL_BACKOFF_FACTOR"))
    tiktok_poll_max_delay_sec: float = Field(default=30.0, validation_alias=AliasChoices("TIKTOK_POLL_MAX_DELAY_SEC", "CROSSPOST_TIKTOK_POLL_MAX_DELAY_SEC"))
    tiktok_poll_max_attempts: int = Field(default=30, validation_alias=AliasChoices("TIKTOK_POLL_MAX_ATTEMPTS", "CROSSPOST_TIKTOK_POLL_MAX_ATTEMPTS"))
    tiktok_post_to_inbox: bool = Field(default=False, validation_alias=AliasChoices("TIKTOK_POST_TO_INBOX", "CROSSPOST_TIKTOK_POST_TO_INBOX"))
    http_timeout_sec: float = Field(default=60.0, validation_alias=AliasChoices("HTTP_TIMEOUT_SEC", "CROSSPOST_HTTP_TIMEOUT_SEC"))
    stuck_publishing_minutes: int = Field(default=15, validation_alias=AliasChoices("STUCK_PUBLISHING_MINUTES", "CROSSPOST_STUCK_PUBLISHING_MINUTES"))
    oauth_state_ttl_minutes: int = Field(default=10, validation_alias=AliasChoices("OAUTH_STATE_TTL_MINUTES", "CROSSPOST_OAUTH_STATE_TTL_MINUTES"))
    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "CROSSPOST_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "CROSSPOST_TELEGRAM_CHAT_ID"))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
