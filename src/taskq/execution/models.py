"""Task domain models.

Defines the core data structures of the processing engine:
- TaskStatus / TaskType: lifecycle status and handler-selecting tag
- Task: working copy handed to a handler (never persisted directly)
- TaskRecord: the persisted shape, plus a diagnostics-only version counter

Valid transition graph::

    QUEUED     → INPROGRESS            (claim)
    INPROGRESS → COMPLETED | FAILED    (handler outcome)
    INPROGRESS → QUEUED                (claim reversion after lock failure)
    FAILED     → QUEUED                (automatic retry or manual requeue)
    COMPLETED  → (terminal)

A FAILED task whose ``attempts >= max_retries`` is terminal for automatic
processing; only ``manual_requeue`` moves it again.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from taskq.core.errors import IllegalTransitionError


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def new_task_id() -> str:
    return f"Task-{uuid.uuid4().hex}"


class TaskStatus(str, Enum):
    """Status of a task."""

    QUEUED = "QUEUED"
    INPROGRESS = "INPROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskType(str, Enum):
    """Known task-type tags.

    The registry resolves handlers by the plain string value, so a record may
    carry a tag outside this enum; it is then served by the default handler.
    """

    EMAIL = "EMAIL"
    SMS = "SMS"
    NEWSLETTER = "NEWSLETTER"
    REPORT = "REPORT"
    DATACLEANUP = "DATACLEANUP"
    TAKESLONG = "TAKESLONG"
    FAIL = "FAIL"
    FAILABS = "FAILABS"
    DEFAULT = "DEFAULT"


VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.INPROGRESS}),
    TaskStatus.INPROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.QUEUED,  # claim reversion only
    }),
    TaskStatus.FAILED: frozenset({TaskStatus.QUEUED}),
    TaskStatus.COMPLETED: frozenset(),
}


def is_legal_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def require_legal_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise :class:`IllegalTransitionError` if *current → target* is illegal.

    The repository calls this before issuing a conditional update, so an
    illegal request never reaches the database.
    """
    if not is_legal_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)


def type_tag(value: TaskType | str) -> str:
    """Normalise a task type (enum or free string) to its registry tag."""
    if isinstance(value, TaskType):
        return value.value
    return str(value).upper()


@dataclass
class Task:
    """Working copy of a task, handed to handlers.

    Mutating it has no effect on persisted state; the orchestrator owns
    every status change.
    """

    id: str
    payload: str
    type: str
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=utcnow)
    owner: str | None = None


@dataclass
class TaskRecord:
    """Persisted task row."""

    id: str
    payload: str
    type: str
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=utcnow)
    owner: str | None = None
    version: int = 0

    @classmethod
    def new(
        cls,
        payload: str,
        task_type: TaskType | str,
        *,
        max_retries: int = 3,
        owner: str | None = None,
        task_id: str | None = None,
    ) -> TaskRecord:
        """Build a fresh QUEUED record with zero attempts."""
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        return cls(
            id=task_id or new_task_id(),
            payload=payload,
            type=type_tag(task_type),
            status=TaskStatus.QUEUED,
            attempts=0,
            max_retries=max_retries,
            created_at=utcnow(),
            owner=owner,
        )

    @property
    def retries_exhausted(self) -> bool:
        return self.attempts >= self.max_retries

    @property
    def is_terminal(self) -> bool:
        if self.status == TaskStatus.COMPLETED:
            return True
        return self.status == TaskStatus.FAILED and self.retries_exhausted

    def to_domain(self) -> Task:
        return Task(
            id=self.id,
            payload=self.payload,
            type=self.type,
            status=self.status,
            attempts=self.attempts,
            max_retries=self.max_retries,
            created_at=self.created_at,
            owner=self.owner,
        )

    def with_status(self, status: TaskStatus, **changes: Any) -> TaskRecord:
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict (cache / CLI output)."""
        return {
            "id": self.id,
            "payload": self.payload,
            "type": self.type,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat(),
            "owner": self.owner,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        created_at = data.get("created_at")
        return cls(
            id=data["id"],
            payload=data.get("payload", ""),
            type=data["type"],
            status=TaskStatus(data["status"]),
            attempts=int(data.get("attempts", 0)),
            max_retries=int(data.get("max_retries", 0)),
            created_at=datetime.fromisoformat(created_at) if created_at else utcnow(),
            owner=data.get("owner"),
            version=int(data.get("version", 0)),
        )


__all__ = [
    "Task",
    "TaskRecord",
    "TaskStatus",
    "TaskType",
    "VALID_TRANSITIONS",
    "is_legal_transition",
    "new_task_id",
    "require_legal_transition",
    "type_tag",
    "utcnow",
]
