"""
Shared pytest fixtures for taskq tests.

This module provides:
- A temp-file SQLite engine with the taskq schema
- In-memory lock, instant sleeper and seeded handler registry
- A recording dispatcher so processing cycles run synchronously
- Settings and logging-context cleanup for test isolation
"""

from __future__ import annotations

import random
import sys
import threading
from pathlib import Path

import pytest

# Ensure taskq package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from taskq.core.cache import InMemoryCache, TaskCache
from taskq.core.database import create_taskq_engine, init_schema
from taskq.core.logging import clear_context
from taskq.core.metrics import TaskMetrics
from taskq.core.settings import HandlerSettings, reset_settings
from taskq.execution.events import EventLog, TaskEventPublisher
from taskq.execution.handlers import InstantSleeper, build_default_registry
from taskq.execution.locks import InMemoryDistributedLock
from taskq.execution.processing import ProcessingService
from taskq.execution.repository import TaskRepository
from taskq.execution.retry import ExponentialBackoff
from taskq.execution.service import TaskService


class RecordingDispatcher:
    """Dispatcher double that records calls instead of running threads."""

    def __init__(self) -> None:
        self.submitted: list[str] = []
        self.scheduled: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    def submit_by_id(self, task_id: str) -> None:
        with self._lock:
            self.submitted.append(task_id)

    def schedule_after(self, task_id: str, delay_seconds: float) -> bool:
        with self._lock:
            self.scheduled.append((task_id, delay_seconds))
        return True

    @property
    def delays(self) -> list[float]:
        return [delay for _, delay in self.scheduled]


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings_and_context():
    reset_settings()
    clear_context()
    yield
    reset_settings()
    clear_context()


# =============================================================================
# Store
# =============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'taskq.db'}"


@pytest.fixture
def db_engine(db_url: str):
    engine = create_taskq_engine(db_url)
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db_engine) -> TaskRepository:
    return TaskRepository(db_engine)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def sleeper() -> InstantSleeper:
    return InstantSleeper()


@pytest.fixture
def handler_settings() -> HandlerSettings:
    return HandlerSettings()


@pytest.fixture
def registry(handler_settings, sleeper):
    return build_default_registry(handler_settings, sleeper, random.Random(7))


@pytest.fixture
def lock() -> InMemoryDistributedLock:
    return InMemoryDistributedLock()


@pytest.fixture
def cache() -> TaskCache:
    return TaskCache(InMemoryCache(max_size=100, default_ttl_seconds=600))


@pytest.fixture
def metrics() -> TaskMetrics:
    return TaskMetrics()


@pytest.fixture
def events() -> EventLog:
    return EventLog(capacity=100)


@pytest.fixture
def publisher() -> TaskEventPublisher:
    return TaskEventPublisher()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def processor(repository, lock, registry, dispatcher, cache, metrics, events, publisher) -> ProcessingService:
    return ProcessingService(
        repository,
        lock,
        registry,
        dispatcher,
        backoff=ExponentialBackoff(base_delay=1.0),
        cache=cache,
        metrics=metrics,
        events=events,
        publisher=publisher,
        lock_ttl_ms=2000,
    )


@pytest.fixture
def service(repository, publisher, cache, events) -> TaskService:
    return TaskService(repository, publisher, cache=cache, events=events, default_max_retries=3)
