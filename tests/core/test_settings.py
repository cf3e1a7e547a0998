"""Tests for taskq.core.settings.

Covers:
- Defaults matching the documented engine behaviour
- Environment variable overrides (TASKQ_*, TASKQ_HANDLER_*)
- Validation of counts, TTLs and backoff bounds
- Cached factory
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from taskq.core.settings import (
    CacheBackend,
    HandlerSettings,
    LockBackend,
    TaskqSettings,
    get_settings,
    reset_settings,
)


class TestDefaults:
    def test_engine_defaults(self):
        s = TaskqSettings()
        assert s.worker_count == 4
        assert s.timer_count == 2
        assert s.lock_ttl_ms == 15_000
        assert s.effective_lock_ttl_ms == 15_000
        assert s.lock_key_prefix == "task:lock:"
        assert s.default_max_retries == 3
        assert s.backoff_base_seconds == 1.0
        assert s.backoff_jitter is False
        assert s.event_log_capacity == 100
        assert s.cache_ttl_seconds == 600
        assert s.shutdown_grace_seconds == 5.0
        assert s.poll_interval_seconds == 2.0

    def test_backends(self):
        s = TaskqSettings()
        assert s.lock_backend == LockBackend.DATABASE
        assert s.cache_backend == CacheBackend.MEMORY
        assert s.requires_redis is False

    def test_handler_defaults(self):
        h = HandlerSettings()
        assert h.email_seconds == 2.0
        assert h.takes_long_seconds == 10.0
        assert h.fail_success_chance == 0.25


class TestLockTtl:
    def test_default_outlasts_every_handler(self):
        s = TaskqSettings()
        assert s.handler.longest_seconds() == 10.0
        assert s.lock_ttl_ms > s.handler.longest_seconds() * 1000

    def test_raised_to_cover_longest_handler(self):
        s = TaskqSettings(lock_ttl_ms=2000, handler=HandlerSettings(takes_long_seconds=10.0))
        assert s.effective_lock_ttl_ms == 12_000

    def test_tracks_slower_handler_from_env(self, monkeypatch):
        monkeypatch.setenv("TASKQ_HANDLER_REPORT_SECONDS", "30")
        s = TaskqSettings()
        assert s.effective_lock_ttl_ms == 32_000

    def test_configured_ttl_kept_when_long_enough(self):
        s = TaskqSettings(lock_ttl_ms=60_000)
        assert s.effective_lock_ttl_ms == 60_000

    def test_chance_not_counted_as_duration(self):
        h = HandlerSettings(
            default_seconds=0,
            email_seconds=0,
            sms_seconds=0,
            newsletter_seconds=0,
            report_seconds=0,
            data_cleanup_seconds=0,
            takes_long_seconds=0,
            fail_seconds=0,
            fail_success_seconds=0,
            fail_absolute_seconds=0,
            fail_success_chance=1.0,
        )
        assert h.longest_seconds() == 0


class TestEnvOverride:
    def test_worker_count_from_env(self, monkeypatch):
        monkeypatch.setenv("TASKQ_WORKER_COUNT", "8")
        assert TaskqSettings().worker_count == 8

    def test_lock_backend_from_env(self, monkeypatch):
        monkeypatch.setenv("TASKQ_LOCK_BACKEND", "redis")
        s = TaskqSettings()
        assert s.lock_backend == LockBackend.REDIS
        assert s.requires_redis is True

    def test_handler_seconds_from_env(self, monkeypatch):
        monkeypatch.setenv("TASKQ_HANDLER_EMAIL_SECONDS", "0.5")
        assert TaskqSettings().handler.email_seconds == 0.5

    def test_sqlite_detection(self):
        assert TaskqSettings(database_url="sqlite:///x.db").is_sqlite is True
        assert TaskqSettings(database_url="postgresql+psycopg://u@h/db").is_sqlite is False

    @pytest.mark.parametrize(("fmt", "expected"), [("json", True), ("console", False), ("auto", None)])
    def test_json_logs(self, fmt, expected):
        assert TaskqSettings(log_format=fmt).json_logs is expected


class TestValidation:
    @pytest.mark.parametrize(
        "field", ["worker_count", "timer_count", "lock_ttl_ms", "event_log_capacity", "poll_interval_seconds"]
    )
    def test_rejects_zero(self, field):
        with pytest.raises(ValidationError):
            TaskqSettings(**{field: 0})

    def test_backoff_max_below_base_rejected(self):
        with pytest.raises(ValidationError):
            TaskqSettings(backoff_base_seconds=2.0, backoff_max_seconds=1.0)

    def test_fail_success_chance_bounded(self):
        with pytest.raises(ValidationError):
            HandlerSettings(fail_success_chance=1.5)


class TestFactory:
    def test_cached(self):
        assert get_settings() is get_settings()

    def test_force_reload(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("TASKQ_TIMER_COUNT", "5")
        assert get_settings() is first
        reloaded = get_settings(_force_reload=True)
        assert reloaded.timer_count == 5

    def test_reset(self):
        first = get_settings()
        reset_settings()
        assert get_settings() is not first
