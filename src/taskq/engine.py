"""Engine wiring — builds every collaborator from ``TaskqSettings``.

Manifesto:
    Components take their collaborators as constructor arguments and never
    reach for globals. This module is the one place that reads settings
    and decides which backend serves each concern, so tests can build the
    same graph with in-memory pieces and production gets Redis or the
    database without code changes.

Architecture:
    ::

        build_engine(settings)
          ├── SQLAlchemy engine + schema      (core.database)
          ├── TaskRepository
          ├── DistributedLock                 memory | redis | database
          ├── TaskCache                       none | memory | redis
          ├── TaskMetrics / EventLog / TaskEventPublisher
          ├── TaskDispatcher  ──bind──►  ProcessingService.claim_and_process
          └── TaskService
                │
                ▼
        TaskqEngine.start()   subscribe dispatcher to task-created events,
                              re-submit QUEUED tasks found in the store
        TaskqEngine.recover_queued()  periodic re-scan (worker loop)
        TaskqEngine.shutdown()

Tags:
    taskq, wiring, engine, lifecycle
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any

from sqlalchemy.engine import Engine, make_url

from taskq.core.cache import InMemoryCache, NullTaskCache, RedisCache, TaskCache
from taskq.core.database import create_taskq_engine, init_schema
from taskq.core.errors import ConfigError
from taskq.core.logging import get_logger
from taskq.core.metrics import TaskMetrics
from taskq.core.settings import CacheBackend, LockBackend, TaskqSettings, get_settings
from taskq.execution.dispatch import TaskDispatcher
from taskq.execution.events import EventLog, TaskEventPublisher
from taskq.execution.handlers import Sleeper, build_default_registry
from taskq.execution.locks import (
    DatabaseDistributedLock,
    DistributedLock,
    InMemoryDistributedLock,
    RedisDistributedLock,
)
from taskq.execution.models import TaskRecord, TaskStatus, TaskType
from taskq.execution.processing import ProcessingService
from taskq.execution.registry import HandlerRegistry
from taskq.execution.repository import TaskRepository
from taskq.execution.retry import BackoffPolicy, ExponentialBackoff
from taskq.execution.service import TaskService

log = get_logger(__name__)


class TaskqEngine:
    """Holds the wired components and owns their lifecycle."""

    def __init__(
        self,
        *,
        settings: TaskqSettings,
        db: Engine,
        repository: TaskRepository,
        lock: DistributedLock,
        cache: TaskCache | NullTaskCache,
        metrics: TaskMetrics,
        events: EventLog,
        publisher: TaskEventPublisher,
        dispatcher: TaskDispatcher,
        registry: HandlerRegistry,
        backoff: BackoffPolicy,
        processor: ProcessingService,
        service: TaskService,
    ):
        self.settings = settings
        self.db = db
        self.repository = repository
        self.lock = lock
        self.cache = cache
        self.metrics = metrics
        self.events = events
        self.publisher = publisher
        self.dispatcher = dispatcher
        self.registry = registry
        self.backoff = backoff
        self.processor = processor
        self.service = service
        self._subscription: str | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._subscription is not None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self, *, recover: bool = True) -> int:
        """Start dispatching newly created tasks.

        Returns:
            Number of persisted QUEUED tasks re-submitted (0 if *recover* is False)
        """
        if self._stopped:
            raise RuntimeError("engine has been shut down")
        if self._subscription is None:
            self._subscription = self.publisher.subscribe(self.dispatcher.submit_by_id)
            log.info(
                "engine_started",
                workers=self.dispatcher.worker_count,
                timers=self.dispatcher.timer_count,
                lock_backend=self.settings.lock_backend.value,
                cache_backend=self.settings.cache_backend.value,
            )
        return self.recover_queued() if recover else 0

    def recover_queued(self) -> int:
        """Submit QUEUED tasks from the store that the dispatcher does not already hold.

        Runs at start (tasks left by a previous process) and periodically from
        ``taskq worker start`` (tasks submitted or requeued by other processes).
        Ids waiting on a retry timer are skipped so their backoff is kept.
        """
        pending = self.dispatcher.pending_ids()
        queued = [r.id for r in self.repository.find_by_status(TaskStatus.QUEUED) if r.id not in pending]
        for task_id in queued:
            self.dispatcher.submit_by_id(task_id)
        if queued:
            log.info("queued_tasks_recovered", count=len(queued))
        return len(queued)

    def shutdown(self, grace_seconds: float | None = None) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._subscription is not None:
            self.publisher.unsubscribe(self._subscription)
            self._subscription = None
        self.dispatcher.shutdown(grace_seconds)
        self.db.dispose()
        log.info("engine_stopped")

    def __enter__(self) -> TaskqEngine:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ #
    # Facade
    # ------------------------------------------------------------------ #

    def submit(
        self,
        payload: str,
        task_type: TaskType | str,
        *,
        owner: str | None = None,
        max_retries: int | None = None,
    ) -> TaskRecord:
        return self.service.create_task(payload, task_type, owner=owner, max_retries=max_retries)

    def submit_by_id(self, task_id: str) -> None:
        self.dispatcher.submit_by_id(task_id)

    def claim_and_process(self, task_id: str) -> None:
        self.processor.claim_and_process(task_id)

    def manual_requeue(self, task_id: str) -> bool:
        return self.processor.manual_requeue(task_id)

    def get_recent_events(self, limit: int | None = None) -> list[str]:
        return self.processor.get_recent_events(limit)

    def get_worker_status(self) -> dict[str, int]:
        return self.dispatcher.get_worker_status()

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.dispatcher.wait_idle(timeout)


# ── Factories ────────────────────────────────────────────────────────────


def _ensure_sqlite_parent(url: str) -> None:
    database = make_url(url).database
    if database and database != ":memory:" and not database.startswith("file:"):
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def _redis_client(settings: TaskqSettings) -> Any:
    import redis

    return redis.Redis.from_url(settings.redis_url)


def build_lock(settings: TaskqSettings, db: Engine, redis_client: Any | None = None) -> DistributedLock:
    if settings.lock_backend == LockBackend.MEMORY:
        return InMemoryDistributedLock()
    if settings.lock_backend == LockBackend.REDIS:
        return RedisDistributedLock(redis_client or _redis_client(settings))
    if settings.lock_backend == LockBackend.DATABASE:
        return DatabaseDistributedLock(db)
    raise ConfigError(f"Unsupported lock backend: {settings.lock_backend}")


def build_cache(settings: TaskqSettings, redis_client: Any | None = None) -> TaskCache | NullTaskCache:
    if settings.cache_backend == CacheBackend.NONE:
        return NullTaskCache()
    if settings.cache_backend == CacheBackend.MEMORY:
        backend = InMemoryCache(max_size=settings.cache_max_size, default_ttl_seconds=settings.cache_ttl_seconds)
    elif settings.cache_backend == CacheBackend.REDIS:
        backend = RedisCache(
            redis_client or _redis_client(settings),
            default_ttl_seconds=settings.cache_ttl_seconds,
        )
    else:
        raise ConfigError(f"Unsupported cache backend: {settings.cache_backend}")
    return TaskCache(backend, ttl_seconds=settings.cache_ttl_seconds)


def build_engine(
    settings: TaskqSettings | None = None,
    *,
    registry: HandlerRegistry | None = None,
    lock: DistributedLock | None = None,
    cache: TaskCache | NullTaskCache | None = None,
    backoff: BackoffPolicy | None = None,
    sleeper: Sleeper | None = None,
    rng: random.Random | None = None,
    db: Engine | None = None,
) -> TaskqEngine:
    """Wire a :class:`TaskqEngine` from *settings* (``get_settings()`` by default).

    Any collaborator passed explicitly replaces the one the settings select.
    """
    settings = settings or get_settings()

    if db is None:
        if settings.is_sqlite:
            _ensure_sqlite_parent(settings.database_url)
        db = create_taskq_engine(settings.database_url, echo=settings.database_echo)
    init_schema(db)

    redis_client = None
    if settings.requires_redis and (lock is None or cache is None):
        redis_client = _redis_client(settings)

    metrics = TaskMetrics()
    events = EventLog(settings.event_log_capacity)
    publisher = TaskEventPublisher()
    repository = TaskRepository(db)
    lock = lock or build_lock(settings, db, redis_client)
    cache = cache if cache is not None else build_cache(settings, redis_client)
    backoff = backoff or ExponentialBackoff.from_settings(settings)
    if registry is None:
        registry = build_default_registry(settings.handler, sleeper, rng)

    lock_ttl_ms = settings.effective_lock_ttl_ms
    if lock_ttl_ms != settings.lock_ttl_ms:
        log.warning("lock_ttl_raised", configured_ms=settings.lock_ttl_ms, effective_ms=lock_ttl_ms)

    dispatcher = TaskDispatcher(
        worker_count=settings.worker_count,
        timer_count=settings.timer_count,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        metrics=metrics,
    )
    processor = ProcessingService(
        repository,
        lock,
        registry,
        dispatcher,
        backoff=backoff,
        cache=cache,
        metrics=metrics,
        events=events,
        publisher=publisher,
        lock_ttl_ms=lock_ttl_ms,
        lock_key_prefix=settings.lock_key_prefix,
    )
    dispatcher.bind(processor.claim_and_process)
    service = TaskService(
        repository,
        publisher,
        cache=cache,
        events=events,
        default_max_retries=settings.default_max_retries,
    )

    return TaskqEngine(
        settings=settings,
        db=db,
        repository=repository,
        lock=lock,
        cache=cache,
        metrics=metrics,
        events=events,
        publisher=publisher,
        dispatcher=dispatcher,
        registry=registry,
        backoff=backoff,
        processor=processor,
        service=service,
    )


__all__ = ["TaskqEngine", "build_cache", "build_engine", "build_lock"]
