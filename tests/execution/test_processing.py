"""Tests for the claim → lock → handle → persist → retry cycle.

Covers:
- Success path (status, attempts, cache, metrics, events, lock release)
- Always-failing task: retry delays, terminal failure, no fourth run
- Concurrent claim_and_process on one id runs the handler once (2 and 12 callers)
- Lock contention reverts the claim, keeps attempts and schedules a retry
- Manual requeue gating
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from taskq.core.errors import CoordinationError, TaskProcessingError
from taskq.execution.models import TaskStatus, TaskType
from taskq.execution.processing import ProcessingService


class CountingHandler:
    """Counts executions and remembers the attempts it was handed."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.attempts_seen: list[int] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.attempts_seen)

    def handle(self, task) -> None:
        with self._lock:
            self.attempts_seen.append(task.attempts)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error


# ── Success ──────────────────────────────────────────────────────────────


class TestSuccess:
    def test_completes_on_first_attempt(self, service, processor, repository):
        task = service.create_task("welcome", TaskType.EMAIL, max_retries=3)

        processor.claim_and_process(task.id)

        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.COMPLETED
        assert found.attempts == 1

    def test_side_effects(self, service, processor, cache, metrics, lock, sleeper):
        task = service.create_task("welcome", TaskType.EMAIL)

        processor.claim_and_process(task.id)

        assert cache.get(task.id).status == TaskStatus.COMPLETED
        assert metrics.claimed.value == 1.0
        assert metrics.completed.labels(task_type="EMAIL").value == 1.0
        assert metrics.snapshot()["processed"] == 1.0
        assert sleeper.calls == [2.0]
        assert not lock.is_locked(processor.lock_key(task.id))
        assert "[COMPLETED]" in processor.get_recent_events()[0]

    def test_unknown_type_uses_default_handler(self, service, processor, repository, sleeper):
        task = service.create_task("x", "THUMBNAIL")
        processor.claim_and_process(task.id)
        assert repository.find_by_id(task.id).status == TaskStatus.COMPLETED
        assert sleeper.calls == [2.0]

    def test_second_call_is_a_no_op(self, service, processor, repository, registry):
        handler = CountingHandler()
        registry.register("COUNT", handler)
        task = service.create_task("x", "COUNT")

        processor.claim_and_process(task.id)
        processor.claim_and_process(task.id)

        assert handler.calls == 1
        assert repository.find_by_id(task.id).attempts == 1

    def test_unknown_id(self, processor):
        processor.claim_and_process("Task-missing")
        assert "[UNKNOWN_TASK] Task-missing" in processor.get_recent_events()[0]


# ── Failure and retry ────────────────────────────────────────────────────


class TestRetry:
    def test_always_failing_task_exhausts_budget(self, service, processor, repository, dispatcher, metrics):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=3)

        attempts_after_cycle = []
        for _ in range(4):
            processor.claim_and_process(task.id)
            attempts_after_cycle.append(repository.find_by_id(task.id).attempts)

        assert attempts_after_cycle == [1, 2, 3, 3]
        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.FAILED
        assert found.is_terminal
        assert dispatcher.delays == [1.0, 2.0]
        assert processor.backoff.delay(found.attempts) == 4.0
        assert metrics.failed.value == 3.0
        assert metrics.retried.value == 2.0

    def test_retry_requeues_with_attempts_kept(self, service, processor, repository, dispatcher):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=3)

        processor.claim_and_process(task.id)

        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.QUEUED
        assert found.attempts == 1
        assert dispatcher.scheduled == [(task.id, 1.0)]
        events = processor.get_recent_events()
        assert "[RETRY_SCHEDULED]" in events[0]
        assert "retry in 1000ms after attempt 1" in events[0]
        assert "[FAILED]" in events[1]

    def test_permanent_failure_event(self, service, processor):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=1)
        processor.claim_and_process(task.id)
        assert "[PERMANENT_FAILURE]" in processor.get_recent_events()[0]

    def test_zero_retries_fails_immediately(self, service, processor, repository, dispatcher):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=0)
        processor.claim_and_process(task.id)
        assert repository.find_by_id(task.id).status == TaskStatus.FAILED
        assert dispatcher.scheduled == []

    def test_unexpected_exception_treated_as_failure(self, service, processor, repository, registry):
        registry.register("CRASH", CountingHandler(error=ValueError("bad payload")))
        task = service.create_task("x", "CRASH", max_retries=1)

        processor.claim_and_process(task.id)

        assert repository.find_by_id(task.id).status == TaskStatus.FAILED

    def test_handler_sees_post_claim_attempts(self, service, processor, registry):
        handler = CountingHandler(error=TaskProcessingError("nope"))
        registry.register("COUNT", handler)
        task = service.create_task("x", "COUNT", max_retries=3)

        for _ in range(3):
            processor.claim_and_process(task.id)

        assert handler.attempts_seen == [1, 2, 3]

    def test_failure_refreshes_cache(self, service, processor, cache):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=1)
        processor.claim_and_process(task.id)
        cached = cache.get(task.id)
        assert cached.status == TaskStatus.FAILED
        assert cached.attempts == 1


# ── Concurrency ──────────────────────────────────────────────────────────


class TestConcurrentClaims:
    def test_two_threads_one_execution(self, service, processor, repository, registry):
        handler = CountingHandler(delay=0.05)
        registry.register("COUNT", handler)
        task = service.create_task("x", "COUNT")
        barrier = threading.Barrier(2)

        def worker():
            barrier.wait()
            processor.claim_and_process(task.id)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert handler.calls == 1
        found = repository.find_by_id(task.id)
        assert found.attempts == 1
        assert found.status == TaskStatus.COMPLETED

    @pytest.mark.parametrize("callers", [8, 12, 16])
    def test_many_threads_one_execution(self, service, processor, repository, registry, dispatcher, callers):
        handler = CountingHandler(delay=0.05)
        registry.register("COUNT", handler)
        task = service.create_task("x", "COUNT")
        barrier = threading.Barrier(callers)
        claims: list[bool] = []
        guard = threading.Lock()

        def worker():
            barrier.wait()
            processor.claim_and_process(task.id)

        def claim_only():
            barrier.wait()
            won = processor.claimer.try_claim(second.id)
            with guard:
                claims.append(won)

        threads = [threading.Thread(target=worker) for _ in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert handler.calls == 1
        found = repository.find_by_id(task.id)
        assert found.attempts == 1
        assert found.status == TaskStatus.COMPLETED
        assert dispatcher.scheduled == []

        second = service.create_task("y", "COUNT")
        barrier = threading.Barrier(callers)
        threads = [threading.Thread(target=claim_only) for _ in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(claims) == [False] * (callers - 1) + [True]
        assert repository.find_by_id(second.id).attempts == 1


# ── Lock contention ──────────────────────────────────────────────────────


class TestLockContention:
    def test_claim_reverted_when_lock_held(self, service, processor, repository, lock, registry, dispatcher):
        handler = CountingHandler()
        registry.register("COUNT", handler)
        task = service.create_task("x", "COUNT")
        key = processor.lock_key(task.id)
        foreign = lock.try_lock(key, 60_000)

        processor.claim_and_process(task.id)

        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.QUEUED
        assert found.attempts == 1
        assert handler.calls == 0
        assert lock.holder(key) == foreign
        assert dispatcher.scheduled == [(task.id, 1.0)]
        assert "[LOCK_UNAVAILABLE]" in processor.get_recent_events()[0]
        assert "retry in 1000ms" in processor.get_recent_events()[0]

        lock.unlock(key, foreign)
        processor.claim_and_process(task.id)

        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.COMPLETED
        assert found.attempts == 2
        assert handler.attempts_seen == [2]

    def test_repeated_contention_backs_off(self, service, processor, repository, lock, dispatcher):
        task = service.create_task("x", TaskType.EMAIL, max_retries=5)
        foreign = lock.try_lock(processor.lock_key(task.id), 60_000)

        for _ in range(3):
            processor.claim_and_process(task.id)

        assert dispatcher.delays == [1.0, 2.0, 4.0]
        assert repository.find_by_id(task.id).status == TaskStatus.QUEUED
        lock.unlock(processor.lock_key(task.id), foreign)

    def test_coordination_outage_reverts_and_propagates(
        self, service, repository, registry, dispatcher, cache, metrics, events, publisher
    ):
        broken_lock = MagicMock()
        broken_lock.try_lock.side_effect = CoordinationError("redis down")
        processor = ProcessingService(
            repository,
            broken_lock,
            registry,
            dispatcher,
            cache=cache,
            metrics=metrics,
            events=events,
            publisher=publisher,
        )
        task = service.create_task("x", TaskType.EMAIL)

        with pytest.raises(CoordinationError):
            processor.claim_and_process(task.id)

        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.QUEUED
        assert found.attempts == 1

    def test_release_uses_acquired_token(self, service, repository, registry, dispatcher, events):
        spy_lock = MagicMock()
        spy_lock.try_lock.return_value = "tok-1"
        spy_lock.unlock.return_value = True
        processor = ProcessingService(repository, spy_lock, registry, dispatcher, events=events, lock_ttl_ms=1500)
        task = service.create_task("x", TaskType.SMS)

        processor.claim_and_process(task.id)

        key = f"task:lock:{task.id}"
        spy_lock.try_lock.assert_called_once_with(key, 1500)
        spy_lock.unlock.assert_called_once_with(key, "tok-1")

    def test_lock_released_when_handler_fails(self, service, processor, lock):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=1)
        processor.claim_and_process(task.id)
        assert not lock.is_locked(processor.lock_key(task.id))

    def test_invalid_ttl(self, repository, lock, registry, dispatcher):
        with pytest.raises(ValueError):
            ProcessingService(repository, lock, registry, dispatcher, lock_ttl_ms=0)


# ── Manual requeue ───────────────────────────────────────────────────────


class TestManualRequeue:
    def test_completed_task_rejected(self, service, processor, repository):
        task = service.create_task("x", TaskType.EMAIL)
        processor.claim_and_process(task.id)
        before = repository.find_by_id(task.id)

        assert processor.manual_requeue(task.id) is False

        after = repository.find_by_id(task.id)
        assert after.status == TaskStatus.COMPLETED
        assert after.version == before.version

    def test_queued_and_missing_rejected(self, service, processor):
        task = service.create_task("x", TaskType.EMAIL)
        assert processor.manual_requeue(task.id) is False
        assert processor.manual_requeue("Task-missing") is False

    def test_failed_task_requeued_and_published(self, service, processor, repository, publisher):
        submitted: list[str] = []
        publisher.subscribe(submitted.append)
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=1)
        processor.claim_and_process(task.id)
        submitted.clear()

        assert processor.manual_requeue(task.id) is True

        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.QUEUED
        assert found.attempts == 0
        assert submitted == [task.id]
        assert "[REQUEUED]" in processor.get_recent_events()[0]

    def test_requeued_task_is_claimable(self, service, processor, repository, cache):
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=1)
        processor.claim_and_process(task.id)
        processor.manual_requeue(task.id)
        assert cache.get(task.id).attempts == 0

        processor.claim_and_process(task.id)

        found = repository.find_by_id(task.id)
        assert found.attempts == 1
        assert found.status == TaskStatus.FAILED


class TestRecentEvents:
    def test_limit_and_order(self, service, processor):
        first = service.create_task("a", TaskType.EMAIL)
        second = service.create_task("b", TaskType.SMS)
        processor.claim_and_process(first.id)
        processor.claim_and_process(second.id)

        recent = processor.get_recent_events(limit=2)
        assert len(recent) == 2
        assert second.id in recent[0]
        assert first.id in recent[1]
