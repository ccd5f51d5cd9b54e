"""Application-wide settings for the admission-control backend."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: Optional[str] = Field(default=None)
    database_echo: bool = Field(default=False)
    # Celery broker for periodic pruning (optional)
    redis_url: Optional[str] = Field(default=None)
    log_level: str = Field(default="INFO")

    rate_limit_enabled: bool = Field(default=True)
    # Named policies: general API, feed exports, webhook deliveries
    rate_limit_api_window_seconds: int = Field(default=60, ge=1)
    rate_limit_api_max_requests: int = Field(default=100, ge=1)
    rate_limit_feed_window_seconds: int = Field(default=300, ge=1)
    rate_limit_feed_max_requests: int = Field(default=10, ge=1)
    rate_limit_webhook_window_seconds: int = Field(default=60, ge=1)
    rate_limit_webhook_max_requests: int = Field(default=50, ge=1)
    # Per-key daily quota when the key row carries none
    api_key_default_daily_limit: int = Field(default=1000, ge=1)
    # Event log housekeeping
    rate_limit_retention_seconds: int = Field(default=24 * 60 * 60, ge=1)
    rate_limit_prune_interval_seconds: int = Field(default=300, ge=1)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
