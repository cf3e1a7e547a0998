"""taskq execution — claiming, locking, dispatch and retry orchestration.

ARCHITECTURE
────────────
::

    TaskService.create_task ──► TaskEventPublisher ──► TaskDispatcher.submit_by_id
                                                              │
                                                              ▼
    ProcessingService.claim_and_process(id)
      ├── TaskClaimer        ─ conditional QUEUED → INPROGRESS
      ├── DistributedLock    ─ token-fenced, TTL-bounded execution window
      ├── HandlerRegistry    ─ type tag → handler, default fallback
      ├── BackoffPolicy      ─ delay from attempt count
      └── TaskDispatcher.schedule_after ─ retry timer pool
"""

from taskq.execution.claims import TaskClaimer
from taskq.execution.dispatch import TaskDispatcher
from taskq.execution.events import EventKind, EventLog, TaskEventPublisher
from taskq.execution.handlers import InstantSleeper, RealSleeper, build_default_registry
from taskq.execution.locks import (
    DatabaseDistributedLock,
    DistributedLock,
    InMemoryDistributedLock,
    RedisDistributedLock,
    lock_or_raise,
)
from taskq.execution.models import Task, TaskRecord, TaskStatus, TaskType, is_legal_transition
from taskq.execution.processing import ProcessingService
from taskq.execution.registry import HandlerRegistry, TaskHandler, register_handler
from taskq.execution.repository import TaskRepository
from taskq.execution.retry import BackoffPolicy, ConstantBackoff, ExponentialBackoff
from taskq.execution.service import TaskService

__all__ = [
    "BackoffPolicy",
    "ConstantBackoff",
    "DatabaseDistributedLock",
    "DistributedLock",
    "EventKind",
    "EventLog",
    "ExponentialBackoff",
    "HandlerRegistry",
    "InMemoryDistributedLock",
    "InstantSleeper",
    "ProcessingService",
    "RealSleeper",
    "RedisDistributedLock",
    "Task",
    "TaskClaimer",
    "TaskDispatcher",
    "TaskEventPublisher",
    "TaskHandler",
    "TaskRecord",
    "TaskRepository",
    "TaskService",
    "TaskStatus",
    "TaskType",
    "build_default_registry",
    "is_legal_transition",
    "lock_or_raise",
    "register_handler",
]
