"""
Structured error types for taskq.

Every failure inside the engine is classified so the orchestrator can turn it
into persisted state plus an event, instead of letting it escape to callers.

Manifesto:
    - **Typed hierarchy:** one base class, one subclass per failure path
    - **Explicit retry semantics:** each error knows whether a retry makes sense
    - **Rich context:** errors carry task ids and keys for structured logging
    - **Chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        TaskqError  (category, retryable, context, cause)
          ├── TaskProcessingError     HANDLER        raised by handlers
          ├── TerminalFailure         HANDLER        retries exhausted
          ├── ClaimConflictError      CLAIM          zero rows changed
          ├── LockUnavailableError    COORDINATION   lock held elsewhere
          ├── IllegalTransitionError  STATE          not in the status graph
          ├── StoreError              STORE          durable store failure
          │     └── DuplicateTaskError               id already taken
          ├── CoordinationError       COORDINATION   lock store failure
          └── ConfigError             CONFIG         invalid settings

    ClaimConflict and LockUnavailable are *normal race outcomes*. The core
    reports them through return values; the exception types exist for
    callers that prefer raising (``TaskClaimer.claim_or_raise``,
    ``locks.lock_or_raise``).

Tags:
    error-handling, exception-hierarchy, retry-logic, taskq
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Classification used for logging and routing."""

    HANDLER = "HANDLER"
    CLAIM = "CLAIM"
    COORDINATION = "COORDINATION"
    STATE = "STATE"
    STORE = "STORE"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


class TaskqError(Exception):
    """
    Base exception for all taskq errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass a message and, optionally, context.

    Examples:
        >>> err = TaskqError("boom").with_context(task_id="Task-1")
        >>> err.to_dict()["context"]
        {'task_id': 'Task-1'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TaskqError:
        """Add context to this error (fluent API)."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# HANDLER ERRORS
# =============================================================================


class TaskProcessingError(TaskqError):
    """
    Raised by a handler to signal that processing failed.

    This is the only channel a handler has for reporting failure. The
    orchestrator catches it, marks the task FAILED, and decides on retry
    eligibility. Handlers never make that decision themselves.
    """

    default_category = ErrorCategory.HANDLER
    default_retryable = True


class TerminalFailure(TaskqError):
    """A task exhausted its retry budget and stays FAILED."""

    default_category = ErrorCategory.HANDLER
    default_retryable = False

    def __init__(self, task_id: str, attempts: int, max_retries: int, **kwargs: Any):
        super().__init__(
            f"Task {task_id} failed permanently after {attempts} attempt(s) (max_retries={max_retries})",
            **kwargs,
        )
        self.task_id = task_id
        self.attempts = attempts
        self.max_retries = max_retries
        self.context.setdefault("task_id", task_id)


# =============================================================================
# RACE OUTCOMES
# =============================================================================


class ClaimConflictError(TaskqError):
    """The conditional claim changed zero rows."""

    default_category = ErrorCategory.CLAIM

    def __init__(self, task_id: str, **kwargs: Any):
        super().__init__(f"Task {task_id} is not claimable", **kwargs)
        self.task_id = task_id
        self.context.setdefault("task_id", task_id)


class LockUnavailableError(TaskqError):
    """Another execution window holds the lock."""

    default_category = ErrorCategory.COORDINATION
    default_retryable = True

    def __init__(self, key: str, **kwargs: Any):
        super().__init__(f"Lock {key} is held by another holder", **kwargs)
        self.key = key
        self.context.setdefault("lock_key", key)


class IllegalTransitionError(TaskqError):
    """A status change outside the task state machine was requested."""

    default_category = ErrorCategory.STATE

    def __init__(self, from_status: Any, to_status: Any, **kwargs: Any):
        super().__init__(f"Illegal task transition {from_status} -> {to_status}", **kwargs)
        self.from_status = from_status
        self.to_status = to_status


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================


class StoreError(TaskqError):
    """The durable store rejected or failed an operation."""

    default_category = ErrorCategory.STORE
    default_retryable = True


class DuplicateTaskError(StoreError):
    """A task with this id already exists; submission never overwrites it."""

    default_retryable = False

    def __init__(self, task_id: str, **kwargs: Any):
        super().__init__(f"Task {task_id} already exists", **kwargs)
        self.task_id = task_id
        self.context.setdefault("task_id", task_id)


class CoordinationError(TaskqError):
    """The coordination (lock) store failed."""

    default_category = ErrorCategory.COORDINATION
    default_retryable = True


class ConfigError(TaskqError):
    """Invalid or inconsistent configuration."""

    default_category = ErrorCategory.CONFIG


__all__ = [
    "ErrorCategory",
    "TaskqError",
    "TaskProcessingError",
    "TerminalFailure",
    "ClaimConflictError",
    "LockUnavailableError",
    "IllegalTransitionError",
    "StoreError",
    "DuplicateTaskError",
    "CoordinationError",
    "ConfigError",
]
