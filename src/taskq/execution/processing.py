"""Processing Orchestrator — claim → lock → handle → persist → retry.

Manifesto:
Workers hand the orchestrator nothing but a task id. Everything that
follows is driven by durable state: the conditional claim decides who runs
the task, the lock bounds how long it may run, and every outcome is written
back through a conditional transition. Handler failures never escape; they
become a FAILED row, an event, a metric and (while the budget allows) a
scheduled retry.

ARCHITECTURE
────────────
::

    claim_and_process(id)
      1. find_by_id            ─ unknown id → event, return
      2. try_claim             ─ 0 rows → return (lost race / not QUEUED)
      3. lock_or_raise(prefix+id)  ─ held → revert_claim, event,
                                  schedule_after(id, backoff.delay(attempts))
      4. registry.resolve(type).handle(task)   (timed)
      5. ok   → INPROGRESS→COMPLETED, cache, metric, event
      6. fail → INPROGRESS→FAILED, cache, metric, event
                attempts < max_retries → FAILED→QUEUED,
                    schedule_after(id, backoff.delay(attempts))
                else → permanent failure event
      7. finally unlock(key, token)

    manual_requeue(id)     ─ FAILED only, attempts reset to 0, re-published
    get_recent_events()    ─ newest first, bounded

Store or coordination-store outages inside a cycle propagate to the worker
boundary, where the dispatcher logs them. A failure between claim and revert
leaves the task INPROGRESS for an external reconciliation sweep.

Related modules:
    claims.py    — try_claim / revert_claim
    locks.py     — DistributedLock backends
    retry.py     — BackoffPolicy
    dispatch.py  — schedule_after for retries
"""

from __future__ import annotations

from taskq.core.cache import NullTaskCache, TaskCache
from taskq.core.errors import LockUnavailableError, TaskProcessingError, TaskqError, TerminalFailure
from taskq.core.logging import LogContext, get_logger
from taskq.core.metrics import TaskMetrics

from .claims import TaskClaimer
from .dispatch import Dispatcher
from .events import EventKind, EventLog, TaskEventPublisher
from .locks import DistributedLock, lock_or_raise
from .models import TaskRecord, TaskStatus
from .registry import HandlerRegistry
from .repository import TaskRepository
from .retry import BackoffPolicy, ExponentialBackoff

log = get_logger(__name__)


class ProcessingService:
    """Coordinates one claim/execute/persist cycle per call."""

    def __init__(
        self,
        repository: TaskRepository,
        lock: DistributedLock,
        registry: HandlerRegistry,
        dispatcher: Dispatcher,
        *,
        backoff: BackoffPolicy | None = None,
        cache: TaskCache | NullTaskCache | None = None,
        metrics: TaskMetrics | None = None,
        events: EventLog | None = None,
        publisher: TaskEventPublisher | None = None,
        claimer: TaskClaimer | None = None,
        lock_ttl_ms: int = 15_000,
        lock_key_prefix: str = "task:lock:",
    ):
        if lock_ttl_ms <= 0:
            raise ValueError("lock_ttl_ms must be positive")
        self.repository = repository
        self.lock = lock
        self.registry = registry
        self.dispatcher = dispatcher
        self.backoff = backoff or ExponentialBackoff()
        self.cache = cache or NullTaskCache()
        self.metrics = metrics or TaskMetrics()
        self.events = events if events is not None else EventLog()
        self.publisher = publisher or TaskEventPublisher()
        self.claimer = claimer or TaskClaimer(repository, self.metrics)
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_key_prefix = lock_key_prefix

    def lock_key(self, task_id: str) -> str:
        return f"{self.lock_key_prefix}{task_id}"

    # ------------------------------------------------------------------ #
    # Claim and process
    # ------------------------------------------------------------------ #

    def claim_and_process(self, task_id: str) -> None:
        with LogContext(task_id=task_id):
            self._claim_and_process(task_id)

    def _claim_and_process(self, task_id: str) -> None:
        record = self.repository.find_by_id(task_id)
        if record is None:
            log.warning("task_not_found")
            self.events.record(EventKind.UNKNOWN_TASK, task_id, "no such task, submission ignored")
            return

        if not self.claimer.try_claim(task_id):
            return

        key = self.lock_key(task_id)
        try:
            token = lock_or_raise(self.lock, key, self.lock_ttl_ms)
        except LockUnavailableError:
            if self.claimer.revert_claim(task_id):
                self._on_lock_unavailable(task_id, record.attempts + 1, key)
            return
        except TaskqError:
            self.claimer.revert_claim(task_id)
            raise

        try:
            claimed = self.repository.find_by_id(task_id)
            if claimed is None:
                log.warning("task_vanished_after_claim")
                return
            self._execute(claimed)
        finally:
            self._release(key, token)

    def _on_lock_unavailable(self, task_id: str, attempts: int, key: str) -> None:
        delay = self.backoff.delay(attempts)
        self.dispatcher.schedule_after(task_id, delay)
        log.info("task_lock_unavailable", lock_key=key, attempts=attempts, delay_seconds=delay)
        self.events.record(
            EventKind.LOCK_UNAVAILABLE,
            task_id,
            f"lock held elsewhere, claim reverted, retry in {int(delay * 1000)}ms",
        )

    def _execute(self, claimed: TaskRecord) -> None:
        handler = self.registry.resolve(claimed.type)
        log.info(
            "task_processing_started",
            task_type=claimed.type,
            attempt=claimed.attempts,
            max_retries=claimed.max_retries,
            handler=type(handler).__name__,
        )
        try:
            with self.metrics.processing_time(claimed.type) as timer:
                handler.handle(claimed.to_domain())
        except TaskProcessingError as exc:
            self._on_failure(claimed, exc)
        except Exception as exc:
            log.exception("task_handler_crashed", task_type=claimed.type)
            self._on_failure(claimed, exc)
        else:
            self._on_success(claimed, timer.elapsed)

    def _on_success(self, claimed: TaskRecord, elapsed: float) -> None:
        if self.repository.transition_simple(claimed.id, TaskStatus.INPROGRESS, TaskStatus.COMPLETED) != 1:
            log.warning("task_completion_not_persisted", reason="status changed during processing")
            return
        self._refresh_cache(claimed, TaskStatus.COMPLETED)
        self.metrics.completed.labels(task_type=claimed.type).inc()
        log.info("task_completed", attempts=claimed.attempts, duration_seconds=round(elapsed, 4))
        self.events.record(
            EventKind.COMPLETED,
            claimed.id,
            f"{claimed.type} completed on attempt {claimed.attempts} in {elapsed:.3f}s",
        )

    def _on_failure(self, claimed: TaskRecord, error: Exception) -> None:
        if self.repository.transition_simple(claimed.id, TaskStatus.INPROGRESS, TaskStatus.FAILED) != 1:
            log.warning("task_failure_not_persisted", reason="status changed during processing")
            return
        self._refresh_cache(claimed, TaskStatus.FAILED)
        self.metrics.failed.labels(task_type=claimed.type).inc()
        log.warning("task_failed", attempts=claimed.attempts, max_retries=claimed.max_retries, error=str(error))
        self.events.record(
            EventKind.FAILED,
            claimed.id,
            f"attempt {claimed.attempts}/{claimed.max_retries} failed: {error}",
        )

        if not self.backoff.should_retry(claimed.attempts, claimed.max_retries):
            terminal = TerminalFailure(claimed.id, claimed.attempts, claimed.max_retries, cause=error)
            log.error("task_failed_permanently", **terminal.to_dict())
            self.events.record(EventKind.PERMANENT_FAILURE, claimed.id, terminal.message)
            return

        if self.repository.transition_simple(claimed.id, TaskStatus.FAILED, TaskStatus.QUEUED) != 1:
            log.warning("task_requeue_missed")
            return
        delay = self.backoff.delay(claimed.attempts)
        self._refresh_cache(claimed, TaskStatus.QUEUED)
        self.dispatcher.schedule_after(claimed.id, delay)
        self.metrics.retried.labels(task_type=claimed.type).inc()
        log.info("task_retry_scheduled", attempts=claimed.attempts, delay_seconds=delay)
        self.events.record(
            EventKind.RETRY_SCHEDULED,
            claimed.id,
            f"retry in {int(delay * 1000)}ms after attempt {claimed.attempts}",
        )

    def _release(self, key: str, token: str) -> None:
        try:
            released = self.lock.unlock(key, token)
        except TaskqError as exc:
            log.error("task_lock_release_failed", lock_key=key, error=str(exc))
            return
        if not released:
            log.warning("task_lock_expired_before_release", lock_key=key, ttl_ms=self.lock_ttl_ms)

    def _refresh_cache(self, claimed: TaskRecord, status: TaskStatus) -> None:
        fresh = self.repository.find_by_id(claimed.id)
        self.cache.put(fresh if fresh is not None else claimed.with_status(status))

    # ------------------------------------------------------------------ #
    # Manual requeue / visibility
    # ------------------------------------------------------------------ #

    def manual_requeue(self, task_id: str) -> bool:
        """Move a FAILED task back to QUEUED with ``attempts`` reset to 0.

        Returns:
            False, with nothing changed, when the task is missing or not FAILED
        """
        record = self.repository.find_by_id(task_id)
        if record is None:
            log.info("manual_requeue_rejected", task_id=task_id, reason="not_found")
            return False
        if record.status != TaskStatus.FAILED:
            log.info("manual_requeue_rejected", task_id=task_id, reason="not_failed", status=record.status.value)
            return False
        if self.repository.transition(task_id, TaskStatus.FAILED, TaskStatus.QUEUED, 0) != 1:
            log.info("manual_requeue_rejected", task_id=task_id, reason="status_changed")
            return False

        self._refresh_cache(record, TaskStatus.QUEUED)
        log.info("task_manually_requeued", task_id=task_id, previous_attempts=record.attempts)
        self.events.record(EventKind.REQUEUED, task_id, f"manually requeued after {record.attempts} attempt(s)")
        self.publisher.publish_created(task_id)
        return True

    def get_recent_events(self, limit: int | None = None) -> list[str]:
        return self.events.recent(limit)


__all__ = ["ProcessingService"]
