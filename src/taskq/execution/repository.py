"""Task Repository — the durable store behind the claim protocol.

Manifesto:
The store is the single source of truth for task status. Every status
change goes through a *conditional* UPDATE (``WHERE id = ? AND status = ?``)
issued as one statement, so two workers racing on the same row can never
both see success. There is no read-then-write path for status.

ARCHITECTURE
────────────
::

    TaskRepository(engine)
      ├── .find_by_id(id)                          ─ snapshot or None
      ├── .insert(record)                          ─ new row only, DuplicateTaskError on clash
      ├── .save(record)                            ─ upsert, version+1 on update
      ├── .claim(id)                               ─ QUEUED → INPROGRESS, attempts+1
      ├── .transition(id, from, to, new_attempts)  ─ conditional, sets attempts
      ├── .transition_simple(id, from, to)         ─ conditional, keeps attempts
      ├── .find_by_status / .find_all              ─ listing
      └── .delete(id) / .exists(id)

    All conditional writes return the number of rows changed (0 or 1).

Related modules:
    claims.py      — the Claim Protocol built on ``claim`` / ``transition_simple``
    processing.py  — persists outcomes through ``transition_simple``
    core/database.py — table definitions and engine factory
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from taskq.core.database import TaskTable
from taskq.core.errors import DuplicateTaskError, StoreError
from taskq.core.logging import get_logger

from .models import TaskRecord, TaskStatus, TaskType, require_legal_transition, type_tag

log = get_logger(__name__)

_COLUMNS = (
    TaskTable.id,
    TaskTable.payload,
    TaskTable.type,
    TaskTable.status,
    TaskTable.attempts,
    TaskTable.max_retries,
    TaskTable.created_at,
    TaskTable.owner,
    TaskTable.version,
)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_record(row: Row) -> TaskRecord:
    return TaskRecord(
        id=row.id,
        payload=row.payload,
        type=row.type,
        status=TaskStatus(row.status),
        attempts=row.attempts,
        max_retries=row.max_retries,
        created_at=_aware(row.created_at),
        owner=row.owner,
        version=row.version,
    )


class TaskRepository:
    """Durable task store over a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def find_by_id(self, task_id: str) -> TaskRecord | None:
        stmt = select(*_COLUMNS).where(TaskTable.id == task_id)
        try:
            with self._engine.connect() as conn:
                row = conn.execute(stmt).first()
        except SQLAlchemyError as exc:
            raise StoreError("find_by_id failed", cause=exc, context={"task_id": task_id}) from exc
        return _to_record(row) if row is not None else None

    def exists(self, task_id: str) -> bool:
        stmt = select(func.count()).select_from(TaskTable).where(TaskTable.id == task_id)
        try:
            with self._engine.connect() as conn:
                return bool(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreError("exists failed", cause=exc, context={"task_id": task_id}) from exc

    def find_by_status(self, status: TaskStatus) -> list[TaskRecord]:
        return self.find_all(status=status)

    def find_all(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: TaskType | str | None = None,
        owner: str | None = None,
    ) -> list[TaskRecord]:
        """List tasks in submission order, optionally filtered."""
        stmt = select(*_COLUMNS)
        if status is not None:
            stmt = stmt.where(TaskTable.status == TaskStatus(status).value)
        if task_type is not None:
            stmt = stmt.where(TaskTable.type == type_tag(task_type))
        if owner is not None:
            stmt = stmt.where(TaskTable.owner == owner)
        stmt = stmt.order_by(TaskTable.created_at.asc(), TaskTable.id.asc())
        try:
            with self._engine.connect() as conn:
                return [_to_record(row) for row in conn.execute(stmt)]
        except SQLAlchemyError as exc:
            raise StoreError("find_all failed", cause=exc) from exc

    def count_by_status(self) -> dict[str, int]:
        stmt = select(TaskTable.status, func.count()).group_by(TaskTable.status)
        try:
            with self._engine.connect() as conn:
                counts = {status: count for status, count in conn.execute(stmt)}
        except SQLAlchemyError as exc:
            raise StoreError("count_by_status failed", cause=exc) from exc
        return {s.value: counts.get(s.value, 0) for s in TaskStatus}

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def insert(self, record: TaskRecord) -> TaskRecord:
        """Insert a brand-new *record*.

        Used by the submission path. An existing row with the same id is never
        touched.

        Raises:
            DuplicateTaskError: If a task with ``record.id`` already exists
        """
        values = {
            "id": record.id,
            "payload": record.payload,
            "type": record.type,
            "status": record.status.value,
            "attempts": record.attempts,
            "max_retries": record.max_retries,
            "created_at": record.created_at,
            "owner": record.owner,
            "version": 0,
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(TaskTable).values(**values))
                row = conn.execute(select(*_COLUMNS).where(TaskTable.id == record.id)).one()
        except IntegrityError as exc:
            raise DuplicateTaskError(record.id, cause=exc) from exc
        except SQLAlchemyError as exc:
            raise StoreError("insert failed", cause=exc, context={"task_id": record.id}) from exc
        return _to_record(row)

    def save(self, record: TaskRecord) -> TaskRecord:
        """Insert *record*, or overwrite the existing row with the same id.

        Administrative upsert. Neither submission nor the orchestrator calls
        this; status changes go through the conditional transitions.
        """
        values = {
            "payload": record.payload,
            "type": record.type,
            "status": record.status.value,
            "attempts": record.attempts,
            "max_retries": record.max_retries,
            "created_at": record.created_at,
            "owner": record.owner,
        }
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(TaskTable)
                    .where(TaskTable.id == record.id)
                    .values(**values, version=TaskTable.version + 1)
                )
                if result.rowcount == 0:
                    conn.execute(insert(TaskTable).values(id=record.id, version=0, **values))
                row = conn.execute(select(*_COLUMNS).where(TaskTable.id == record.id)).one()
        except SQLAlchemyError as exc:
            raise StoreError("save failed", cause=exc, context={"task_id": record.id}) from exc
        return _to_record(row)

    def claim(self, task_id: str) -> int:
        """QUEUED → INPROGRESS with ``attempts = attempts + 1`` in one statement."""
        stmt = (
            update(TaskTable)
            .where(TaskTable.id == task_id, TaskTable.status == TaskStatus.QUEUED.value)
            .values(
                status=TaskStatus.INPROGRESS.value,
                attempts=TaskTable.attempts + 1,
                version=TaskTable.version + 1,
            )
        )
        return self._execute_conditional(stmt, "claim", task_id)

    def transition(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        new_attempts: int,
    ) -> int:
        """Conditional status change that also sets ``attempts``.

        Returns:
            Rows affected (0 when the row is missing or not in *from_status*).
        """
        require_legal_transition(from_status, to_status)
        if new_attempts < 0:
            raise ValueError("new_attempts must be non-negative")
        stmt = (
            update(TaskTable)
            .where(TaskTable.id == task_id, TaskTable.status == from_status.value)
            .values(status=to_status.value, attempts=new_attempts, version=TaskTable.version + 1)
        )
        return self._execute_conditional(stmt, "transition", task_id)

    def transition_simple(self, task_id: str, from_status: TaskStatus, to_status: TaskStatus) -> int:
        """Conditional status change that leaves ``attempts`` untouched."""
        require_legal_transition(from_status, to_status)
        stmt = (
            update(TaskTable)
            .where(TaskTable.id == task_id, TaskTable.status == from_status.value)
            .values(status=to_status.value, version=TaskTable.version + 1)
        )
        return self._execute_conditional(stmt, "transition_simple", task_id)

    def delete(self, task_id: str) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(delete(TaskTable).where(TaskTable.id == task_id))
        except SQLAlchemyError as exc:
            raise StoreError("delete failed", cause=exc, context={"task_id": task_id}) from exc
        return result.rowcount > 0

    def _execute_conditional(self, stmt, operation: str, task_id: str) -> int:
        try:
            with self._engine.begin() as conn:
                rowcount = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise StoreError(f"{operation} failed", cause=exc, context={"task_id": task_id}) from exc
        log.debug("store_conditional_update", operation=operation, task_id=task_id, rows=rowcount)
        return rowcount


__all__ = ["TaskRepository"]
