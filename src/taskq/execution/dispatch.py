"""Dispatch Layer — fixed worker pool plus a retry timer pool.

ARCHITECTURE
────────────
::

    TaskDispatcher(worker_count=4, timer_count=2, shutdown_grace_seconds=5)
      ├── .bind(process)               ─ attach claim_and_process
      ├── .submit_by_id(id)            ─ ThreadPoolExecutor.submit
      ├── .schedule_after(id, delay)   ─ delay heap → timer thread → submit_by_id
      ├── .get_worker_status()         ─ {"active", "idle", "queued"}
      ├── .pending_scheduled()         ─ retries waiting on a timer
      ├── .pending_ids()               ─ ids the dispatcher already holds
      ├── .wait_idle(timeout)          ─ block until nothing queued/active/scheduled
      └── .shutdown(grace)             ─ stop timers, drain, cancel queued

    Pool sizes are fixed configuration values; nothing auto-scales.

Exceptions escaping ``process`` are logged at the worker boundary and never
kill a pool thread. Submissions after shutdown are logged and dropped.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Protocol

from taskq.core.logging import get_logger
from taskq.core.metrics import TaskMetrics

log = get_logger(__name__)

ProcessFn = Callable[[str], None]


class Dispatcher(Protocol):
    """What the orchestrator and service need from a dispatcher."""

    def submit_by_id(self, task_id: str) -> object: ...

    def schedule_after(self, task_id: str, delay_seconds: float) -> bool: ...


class TaskDispatcher:
    """Thread-pool dispatcher for claim-and-process invocations."""

    def __init__(
        self,
        worker_count: int = 4,
        timer_count: int = 2,
        shutdown_grace_seconds: float = 5.0,
        metrics: TaskMetrics | None = None,
        name: str = "taskq",
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if timer_count < 1:
            raise ValueError("timer_count must be >= 1")

        self._worker_count = worker_count
        self._timer_count = timer_count
        self._grace = shutdown_grace_seconds
        self._metrics = metrics
        self._process: ProcessFn | None = None

        self._pool = ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix=f"{name}-worker")
        self._futures: dict[Future, str] = {}
        self._queued = 0
        self._active = 0
        self._state = threading.Condition()
        self._stopped = False

        # (due_monotonic, seq, task_id)
        self._heap: list[tuple[float, int, str]] = []
        self._in_transit = 0
        self._seq = itertools.count()
        self._timer_cond = threading.Condition()
        self._timers = [
            threading.Thread(target=self._timer_loop, name=f"{name}-timer-{i}", daemon=True)
            for i in range(timer_count)
        ]
        for thread in self._timers:
            thread.start()

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def timer_count(self) -> int:
        return self._timer_count

    @property
    def is_shutdown(self) -> bool:
        return self._stopped

    def bind(self, process: ProcessFn) -> None:
        """Attach the callable every submitted id is handed to."""
        self._process = process

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    def submit_by_id(self, task_id: str) -> Future | None:
        """Queue a claim-and-process invocation for *task_id*.

        Returns the future, or ``None`` when the dispatcher is shut down.
        """
        if self._process is None:
            raise RuntimeError("TaskDispatcher.bind() must be called before submitting")
        with self._state:
            if self._stopped:
                log.warning("submission_dropped", task_id=task_id, reason="dispatcher_shutdown")
                return None
            try:
                future = self._pool.submit(self._run, task_id)
            except RuntimeError:
                log.warning("submission_dropped", task_id=task_id, reason="pool_shutdown")
                return None
            self._queued += 1
            self._futures[future] = task_id
        future.add_done_callback(self._on_done)
        if self._metrics is not None:
            self._metrics.submitted.inc()
        log.debug("task_submitted", task_id=task_id)
        return future

    def _run(self, task_id: str) -> None:
        with self._state:
            self._queued -= 1
            self._active += 1
        try:
            self._process(task_id)  # type: ignore[misc]
        except Exception:
            log.exception("task_processing_crashed", task_id=task_id)
        finally:
            with self._state:
                self._active -= 1
                self._state.notify_all()

    def _on_done(self, future: Future) -> None:
        with self._state:
            self._futures.pop(future, None)
            if future.cancelled():
                self._queued -= 1
            self._state.notify_all()

    # ------------------------------------------------------------------ #
    # Delayed re-submission
    # ------------------------------------------------------------------ #

    def schedule_after(self, task_id: str, delay_seconds: float) -> bool:
        """Re-submit *task_id* after *delay_seconds*. False once shut down."""
        due = time.monotonic() + max(0.0, delay_seconds)
        with self._timer_cond:
            # shutdown clears the heap under this same lock
            if self._stopped:
                log.warning("retry_dropped", task_id=task_id, reason="dispatcher_shutdown")
                return False
            heapq.heappush(self._heap, (due, next(self._seq), task_id))
            self._timer_cond.notify()
        log.debug("retry_scheduled", task_id=task_id, delay_seconds=delay_seconds)
        return True

    def pending_scheduled(self) -> int:
        """Retries not yet handed to the worker pool."""
        with self._timer_cond:
            return len(self._heap) + self._in_transit

    def pending_ids(self) -> set[str]:
        """Ids queued, running or waiting on a retry timer."""
        with self._state:
            ids = set(self._futures.values())
        with self._timer_cond:
            ids.update(task_id for _, _, task_id in self._heap)
        return ids

    def _timer_loop(self) -> None:
        while True:
            with self._timer_cond:
                while not self._stopped:
                    if not self._heap:
                        self._timer_cond.wait()
                        continue
                    remaining = self._heap[0][0] - time.monotonic()
                    if remaining <= 0:
                        break
                    self._timer_cond.wait(timeout=remaining)
                if self._stopped:
                    return
                _, _, task_id = heapq.heappop(self._heap)
                self._in_transit += 1
            try:
                self.submit_by_id(task_id)
            except Exception:
                log.exception("retry_submission_failed", task_id=task_id)
            finally:
                with self._timer_cond:
                    self._in_transit -= 1
            with self._state:
                self._state.notify_all()

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #

    def get_worker_status(self) -> dict[str, int]:
        with self._state:
            active = self._active
            queued = self._queued
        return {
            "active": active,
            "idle": max(0, self._worker_count - active),
            "queued": queued,
        }

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no work is queued, running or waiting on a timer.

        Returns:
            True if idle was reached before *timeout*
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._state:
            while True:
                if self._active == 0 and self._queued == 0 and self.pending_scheduled() == 0:
                    return True
                if deadline is None:
                    wait_for = 0.1
                else:
                    wait_for = min(0.1, deadline - time.monotonic())
                    if wait_for <= 0:
                        return False
                self._state.wait(timeout=wait_for)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def shutdown(self, grace_seconds: float | None = None) -> None:
        """Stop timers, wait up to the grace period, then cancel queued work."""
        grace = self._grace if grace_seconds is None else grace_seconds
        with self._state:
            if self._stopped:
                return
            self._stopped = True
            futures = list(self._futures)

        with self._timer_cond:
            dropped = len(self._heap)
            self._heap.clear()
            self._timer_cond.notify_all()
        if dropped:
            log.warning("pending_retries_dropped", count=dropped)

        self._pool.shutdown(wait=False)
        _, not_done = wait_futures(futures, timeout=grace)
        if not_done:
            log.warning("shutdown_grace_expired", unfinished=len(not_done), grace_seconds=grace)
            self._pool.shutdown(wait=False, cancel_futures=True)

        for thread in self._timers:
            thread.join(timeout=1.0)
        log.info("dispatcher_stopped", workers=self._worker_count, timers=self._timer_count)


__all__ = ["Dispatcher", "ProcessFn", "TaskDispatcher"]
