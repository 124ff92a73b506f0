"""
Runtime configuration.

'SyncSettings' is read once from the environment (prefix 'CHAT_SYNC_') and an
optional '.env' file. Components accept an explicit 'SyncSettings' instance so
tests can tighten timings without touching the process environment; when none
is passed they fall back to the cached instance from 'get_settings()'.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    # Object storage
    storage_url: str = "http://localhost:54321"
    storage_api_key: str = ""
    storage_bucket: str = "chat-media"

    # Push gateway
    push_url: str = "https://exp.host/--/api/v2/push/send"
    push_timeout: float = 15.0

    # Reconciliation
    echo_match_window_seconds: float = Field(default=30.0, ge=0)
    refetch_interval: float = Field(default=30.0, ge=0)
    refetch_interval_max: float = Field(default=300.0, ge=0)
    resubscribe_attempts: int = Field(default=5, ge=0)

    # Bounded retry for reads and writes
    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_max: float = Field(default=8.0, ge=0)

    # Display
    media_placeholder: str = "[Media]"
    unknown_sender_name: str = "Unknown"
    empty_preview: str = "No messages yet"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CHAT_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> SyncSettings:
    return SyncSettings()
