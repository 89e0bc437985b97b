"""Configuration management for Delegate MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DelegateSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    host_url: str = Field(default="http://127.0.0.1:4096", validation_alias="OPENCODE_URL")
    directory: Path = Field(default_factory=Path.cwd, validation_alias="DELEGATE_DIRECTORY")
    request_timeout: float = Field(default=600.0, validation_alias="DELEGATE_REQUEST_TIMEOUT")
    log_level: str = Field(default="INFO", validation_alias="DELEGATE_LOG_LEVEL")
    git_path: str | None = Field(default=None, validation_alias="GIT_PATH")

    default_wait_timeout_ms: int = Field(
        default=20 * 60 * 1000, validation_alias="DELEGATE_WAIT_TIMEOUT_MS"
    )
    poll_interval_ms: int = Field(default=200, validation_alias="DELEGATE_POLL_INTERVAL_MS")
    poll_multiplier: float = Field(default=1.2, validation_alias="DELEGATE_POLL_MULTIPLIER")
    poll_max_interval_ms: int = Field(default=2000, validation_alias="DELEGATE_POLL_MAX_INTERVAL_MS")

    max_active_tasks: int = Field(default=0, validation_alias="DELEGATE_MAX_ACTIVE_TASKS")
    broadcast_max_length: int = Field(default=2000, validation_alias="DELEGATE_BROADCAST_MAX_LENGTH")

    seen_cache_capacity: int = Field(default=1024, validation_alias="DELEGATE_SEEN_CACHE_CAPACITY")
    seen_cache_ttl_seconds: float = Field(
        default=3600.0, validation_alias="DELEGATE_SEEN_CACHE_TTL_SECONDS"
    )
    event_retry_seconds: float = Field(default=5.0, validation_alias="DELEGATE_EVENT_RETRY_SECONDS")

    watch_events: bool = Field(default=True, validation_alias="DELEGATE_WATCH_EVENTS")
    prune_worktrees: bool = Field(default=True, validation_alias="DELEGATE_PRUNE_WORKTREES")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "DELEGATE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("host_url")
    @classmethod
    def _strip_host_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("OPENCODE_URL must not be empty")
        return normalized

    @field_validator(
        "poll_interval_ms", "poll_max_interval_ms", "seen_cache_capacity", "broadcast_max_length"
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Polling intervals, cache capacity and broadcast length must be >= 1")
        return value

    @field_validator("poll_multiplier")
    @classmethod
    def _validate_multiplier(cls, value: float) -> float:
        if value < 1:
            raise ValueError("DELEGATE_POLL_MULTIPLIER must be >= 1")
        return value

    @field_validator("max_active_tasks")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("DELEGATE_MAX_ACTIVE_TASKS must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> DelegateSettings:
    """Return cached settings instance."""

    settings = DelegateSettings()
    settings.directory = settings.directory.expanduser().resolve()
    return settings


__all__ = ["DelegateSettings", "get_settings"]
