"""Claim Protocol — the atomic QUEUED → INPROGRESS transition.

This is the only place a task leaves QUEUED. ``try_claim`` is a single
conditional UPDATE that also increments ``attempts``; when N workers race on
one id exactly one sees a changed row and the rest see zero and do nothing.

``revert_claim`` is the compensating step used when the lock cannot be
acquired after a successful claim. It keeps ``attempts`` as incremented.
"""

from __future__ import annotations

from taskq.core.errors import ClaimConflictError
from taskq.core.logging import get_logger
from taskq.core.metrics import TaskMetrics

from .models import TaskStatus
from .repository import TaskRepository

log = get_logger(__name__)


class TaskClaimer:
    def __init__(self, repository: TaskRepository, metrics: TaskMetrics | None = None):
        self._repository = repository
        self._metrics = metrics

    def try_claim(self, task_id: str) -> bool:
        """Claim *task_id* for this worker. True iff exactly one row changed."""
        claimed = self._repository.claim(task_id) == 1
        if claimed:
            if self._metrics is not None:
                self._metrics.claimed.inc()
            log.debug("task_claimed", task_id=task_id)
        else:
            log.debug("task_claim_skipped", task_id=task_id)
        return claimed

    def claim_or_raise(self, task_id: str) -> None:
        """Like :meth:`try_claim` but raises :class:`ClaimConflictError` on a lost race."""
        if not self.try_claim(task_id):
            raise ClaimConflictError(task_id)

    def revert_claim(self, task_id: str) -> bool:
        """INPROGRESS → QUEUED, ``attempts`` unchanged."""
        reverted = self._repository.transition_simple(task_id, TaskStatus.INPROGRESS, TaskStatus.QUEUED) == 1
        if reverted:
            log.info("task_claim_reverted", task_id=task_id)
        else:
            log.warning("task_claim_revert_missed", task_id=task_id)
        return reverted


__all__ = ["TaskClaimer"]
