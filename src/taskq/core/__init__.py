"""taskq core — errors, logging, settings, metrics, cache and database primitives."""

from taskq.core.errors import (
    ClaimConflictError,
    ConfigError,
    CoordinationError,
    DuplicateTaskError,
    ErrorCategory,
    IllegalTransitionError,
    LockUnavailableError,
    StoreError,
    TaskProcessingError,
    TaskqError,
    TerminalFailure,
)
from taskq.core.logging import LogContext, configure_logging, get_logger
from taskq.core.metrics import MetricsRegistry, TaskMetrics
from taskq.core.settings import CacheBackend, HandlerSettings, LockBackend, TaskqSettings, get_settings

__all__ = [
    "CacheBackend",
    "ClaimConflictError",
    "ConfigError",
    "CoordinationError",
    "DuplicateTaskError",
    "ErrorCategory",
    "HandlerSettings",
    "IllegalTransitionError",
    "LockBackend",
    "LockUnavailableError",
    "LogContext",
    "MetricsRegistry",
    "StoreError",
    "TaskMetrics",
    "TaskProcessingError",
    "TaskqError",
    "TaskqSettings",
    "TerminalFailure",
    "configure_logging",
    "get_logger",
    "get_settings",
]
