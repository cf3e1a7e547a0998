"""
Centralized settings for taskq.

Manifesto:
    Worker counts, lock TTLs and backoff parameters decide how the engine
    behaves under load. They must be tunable per deployment without code
    changes, validated once at startup, and shared by every component.
    ``TaskqSettings`` is that single source of truth.

All fields can be set via ``TASKQ_*`` environment variables (e.g.
``TASKQ_WORKER_COUNT=8``) or a ``.env`` file. Simulated handler durations live
in :class:`HandlerSettings` (``TASKQ_HANDLER_*``).

Tags:
    taskq, configuration, settings, pydantic, caching, validation
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LockBackend(str, Enum):
    """Supported coordination-store backends for the distributed lock."""

    MEMORY = "memory"
    REDIS = "redis"
    DATABASE = "database"


class CacheBackend(str, Enum):
    """Supported read-through cache backends."""

    NONE = "none"
    MEMORY = "memory"
    REDIS = "redis"


class HandlerSettings(BaseSettings):
    """Simulated processing time, in seconds, for each built-in handler."""

    model_config = SettingsConfigDict(
        env_prefix="TASKQ_HANDLER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    default_seconds: float = Field(default=2.0, ge=0)
    email_seconds: float = Field(default=2.0, ge=0)
    sms_seconds: float = Field(default=1.0, ge=0)
    newsletter_seconds: float = Field(default=3.0, ge=0)
    report_seconds: float = Field(default=5.0, ge=0)
    data_cleanup_seconds: float = Field(default=3.0, ge=0)
    takes_long_seconds: float = Field(default=10.0, ge=0)
    fail_seconds: float = Field(default=1.0, ge=0)
    fail_success_seconds: float = Field(default=2.0, ge=0)
    fail_absolute_seconds: float = Field(default=1.0, ge=0)
    fail_success_chance: float = Field(default=0.25, ge=0, le=1)

    def longest_seconds(self) -> float:
        """Longest simulated run across every built-in handler."""
        return max(value for name, value in self.model_dump().items() if name.endswith("_seconds"))


class TaskqSettings(BaseSettings):
    """taskq engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TASKQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Durable store ────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///data/taskq.db")
    database_echo: bool = Field(default=False)

    # ── Coordination store / cache ───────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0")
    lock_backend: LockBackend = Field(default=LockBackend.DATABASE)
    cache_backend: CacheBackend = Field(default=CacheBackend.MEMORY)
    cache_ttl_seconds: int = Field(default=600, gt=0)
    cache_max_size: int = Field(default=10_000, gt=0)

    # ── Dispatch ─────────────────────────────────────────────────
    worker_count: int = Field(default=4, ge=1, description="Fixed worker pool size")
    timer_count: int = Field(default=2, ge=1, description="Fixed retry-timer pool size")
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0, description="Worker re-scan of the store for QUEUED tasks")

    # ── Locking ──────────────────────────────────────────────────
    lock_ttl_ms: int = Field(default=15_000, gt=0, description="Max expected handler run time")
    lock_ttl_margin_ms: int = Field(default=2000, ge=0, description="Headroom above the longest handler")
    lock_key_prefix: str = Field(default="task:lock:")

    # ── Retry / backoff ──────────────────────────────────────────
    default_max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_max_seconds: float | None = Field(default=None, gt=0)
    backoff_jitter: bool = Field(default=False)

    # ── Observability ────────────────────────────────────────────
    event_log_capacity: int = Field(default=100, ge=1)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json | console | auto")

    # ── Handlers ─────────────────────────────────────────────────
    handler: HandlerSettings = Field(default_factory=HandlerSettings)

    @model_validator(mode="after")
    def _validate_backoff(self) -> TaskqSettings:
        if self.backoff_max_seconds is not None and self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self

    @property
    def effective_lock_ttl_ms(self) -> int:
        """``lock_ttl_ms``, raised if needed to outlast the longest handler plus the margin."""
        floor = int(math.ceil(self.handler.longest_seconds() * 1000)) + self.lock_ttl_margin_ms
        return max(self.lock_ttl_ms, floor)

    @property
    def requires_redis(self) -> bool:
        return self.lock_backend == LockBackend.REDIS or self.cache_backend == CacheBackend.REDIS

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def json_logs(self) -> bool | None:
        if self.log_format == "json":
            return True
        if self.log_format == "console":
            return False
        return None


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: TaskqSettings | None = None


def get_settings(*, _force_reload: bool = False) -> TaskqSettings:
    """Load, validate, and cache a :class:`TaskqSettings` instance."""
    global _settings_cache
    if _settings_cache is None or _force_reload:
        _settings_cache = TaskqSettings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings_cache
    _settings_cache = None


__all__ = [
    "CacheBackend",
    "HandlerSettings",
    "LockBackend",
    "TaskqSettings",
    "get_settings",
    "reset_settings",
]
