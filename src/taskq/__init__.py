"""
taskq — durable, retryable background task processing.

Clients submit typed tasks; a fixed pool of workers claims them through a
conditional update, guards execution with a token-fenced lock, persists the
outcome, and reschedules failures with exponential backoff.

Example::

    from taskq import build_engine

    with build_engine() as engine:
        engine.start()
        engine.submit("hello", "EMAIL")
        engine.wait_idle(timeout=30)
"""

__version__ = "0.1.0"

from taskq.core.errors import TaskProcessingError, TaskqError
from taskq.engine import TaskqEngine, build_engine
from taskq.execution.models import Task, TaskRecord, TaskStatus, TaskType

__all__ = [
    "Task",
    "TaskProcessingError",
    "TaskRecord",
    "TaskStatus",
    "TaskType",
    "TaskqEngine",
    "TaskqError",
    "__version__",
    "build_engine",
]
