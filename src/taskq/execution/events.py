"""Processing Events — bounded event log and task-created publication.

WHY
───
Operators want a quick "what just happened" view without querying the
store. The event log is a most-recent-first ring buffer: it is
non-authoritative, bounded, and lost on restart without any effect on
correctness.

Separately, the submission path must notify the dispatcher only *after*
a new task is durably committed, so a worker never races a record that is
not yet visible. ``TaskEventPublisher`` is that post-commit hook.

ARCHITECTURE
────────────
::

    ProcessingEvent(kind, task_id, message, timestamp)
      └── .render()  ─ "2026-01-01T00:00:00+00:00 [COMPLETED] Task-1: ..."

    EventLog(capacity=100)
      ├── .record(kind, task_id, message)
      ├── .recent(limit=None)   ─ rendered strings, newest first
      └── .entries()            ─ ProcessingEvent objects, newest first

    TaskEventPublisher
      ├── .subscribe(listener)  ─ listener(task_id)
      └── .publish_created(task_id)

Related modules:
    processing.py — records events for every outcome
    service.py    — publishes after insert
    engine.py     — subscribes ``dispatcher.submit_by_id``
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from taskq.core.logging import get_logger

from .models import utcnow

log = get_logger(__name__)


class EventKind(str, Enum):
    """Kinds of processing events."""

    CREATED = "CREATED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"
    UNKNOWN_TASK = "UNKNOWN_TASK"
    REQUEUED = "REQUEUED"


@dataclass(frozen=True)
class ProcessingEvent:
    kind: EventKind
    task_id: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def render(self) -> str:
        return f"{self.timestamp.isoformat()} [{self.kind.value}] {self.task_id}: {self.message}"


class EventLog:
    """Size-bounded, most-recent-first event buffer."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._events: deque[ProcessingEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, kind: EventKind, task_id: str, message: str) -> ProcessingEvent:
        event = ProcessingEvent(kind=kind, task_id=task_id, message=message)
        with self._lock:
            # appendleft on a full deque drops the oldest entry from the right
            self._events.appendleft(event)
        return event

    def entries(self) -> list[ProcessingEvent]:
        with self._lock:
            return list(self._events)

    def recent(self, limit: int | None = None) -> list[str]:
        events = self.entries()
        if limit is not None:
            events = events[:limit]
        return [event.render() for event in events]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


TaskCreatedListener = Callable[[str], None]


class TaskEventPublisher:
    """Synchronous post-commit publisher for task-created notifications.

    Listener exceptions are logged and do not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, TaskCreatedListener] = {}
        self._lock = threading.Lock()

    def subscribe(self, listener: TaskCreatedListener) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._listeners[sub_id] = listener
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._listeners.pop(subscription_id, None) is not None

    def publish_created(self, task_id: str) -> None:
        with self._lock:
            listeners = list(self._listeners.items())
        for sub_id, listener in listeners:
            try:
                listener(task_id)
            except Exception as exc:
                log.warning("event_listener_error", subscription_id=sub_id, task_id=task_id, error=str(exc))

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._listeners)


__all__ = [
    "EventKind",
    "EventLog",
    "ProcessingEvent",
    "TaskCreatedListener",
    "TaskEventPublisher",
]
