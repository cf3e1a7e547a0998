"""Task Service — submission and read path for external callers.

``create_task`` inserts a QUEUED record and only then publishes the
task-created notification, so the dispatcher never sees an id whose row is
not yet committed. Reads go through the advisory cache first.
"""

from __future__ import annotations

from taskq.core.cache import NullTaskCache, TaskCache
from taskq.core.logging import get_logger

from .events import EventKind, EventLog, TaskEventPublisher
from .models import TaskRecord, TaskStatus, TaskType
from .repository import TaskRepository

log = get_logger(__name__)


class TaskService:
    def __init__(
        self,
        repository: TaskRepository,
        publisher: TaskEventPublisher,
        *,
        cache: TaskCache | NullTaskCache | None = None,
        events: EventLog | None = None,
        default_max_retries: int = 3,
    ):
        self.repository = repository
        self.publisher = publisher
        self.cache = cache or NullTaskCache()
        self.events = events
        self.default_max_retries = default_max_retries

    def create_task(
        self,
        payload: str,
        task_type: TaskType | str,
        *,
        owner: str | None = None,
        max_retries: int | None = None,
        task_id: str | None = None,
    ) -> TaskRecord:
        """Persist a new QUEUED task and notify subscribers after commit.

        Raises:
            DuplicateTaskError: If *task_id* names an existing task. Nothing is
                cached, recorded or published in that case.
        """
        record = TaskRecord.new(
            payload,
            task_type,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            owner=owner,
            task_id=task_id,
        )
        saved = self.repository.insert(record)
        self.cache.put(saved)
        log.info("task_created", task_id=saved.id, task_type=saved.type, max_retries=saved.max_retries, owner=owner)
        if self.events is not None:
            self.events.record(EventKind.CREATED, saved.id, f"{saved.type} task created")
        self.publisher.publish_created(saved.id)
        return saved

    def get_task(self, task_id: str) -> TaskRecord | None:
        """Read-through lookup: cache first, then the store."""
        cached = self.cache.get(task_id)
        if cached is not None:
            return cached
        record = self.repository.find_by_id(task_id)
        if record is not None:
            self.cache.put(record)
        return record

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: TaskType | str | None = None,
        owner: str | None = None,
    ) -> list[TaskRecord]:
        return self.repository.find_all(status=status, task_type=task_type, owner=owner)

    def delete_task(self, task_id: str) -> bool:
        """Remove a task from the store and the cache."""
        deleted = self.repository.delete(task_id)
        self.cache.delete(task_id)
        if deleted:
            log.info("task_deleted", task_id=task_id)
        return deleted


__all__ = ["TaskService"]
