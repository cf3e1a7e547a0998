"""SQLAlchemy engine factory and table definitions for the durable store.

Uses SQLAlchemy 2.0 ``DeclarativeBase``. The tables are only ever touched
through SQLAlchemy Core statements (see ``taskq.execution.repository``) so
each status change is one conditional UPDATE.

Tables
------
* **taskq_tasks** — persisted task records (status, attempts, version)
* **taskq_locks** — coordination rows for ``DatabaseDistributedLock``
"""

from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, Text, event
from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class TaskqBase(DeclarativeBase):
    """Shared declarative base for every taskq table."""

    type_annotation_map = {
        str: Text,
        int: Integer,
        datetime.datetime: DateTime(timezone=True),
    }


class TaskTable(TaskqBase):
    __tablename__ = "taskq_tasks"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    owner: Mapped[str | None] = mapped_column(Text, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LockTable(TaskqBase):
    __tablename__ = "taskq_locks"

    lock_key: Mapped[str] = mapped_column(Text, primary_key=True)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def create_taskq_engine(
    url: str = "sqlite:///taskq.db",
    *,
    echo: bool = False,
    busy_timeout_seconds: float = 30.0,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql+psycopg://…``, etc.)
    echo:
        If ``True``, log all SQL.
    busy_timeout_seconds:
        SQLite only: how long a writer waits for the database lock. Concurrent
        claimers serialize on it instead of failing with "database is locked".
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", busy_timeout_seconds)
        engine = _sa_create_engine(url, echo=echo, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_seconds * 1000)}")
            cursor.close()

        return engine

    kwargs.setdefault("pool_pre_ping", True)
    return _sa_create_engine(url, echo=echo, **kwargs)


def init_schema(engine: Engine) -> None:
    """Create all taskq tables if they do not exist."""
    TaskqBase.metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    """Drop all taskq tables (testing only)."""
    TaskqBase.metadata.drop_all(engine)


__all__ = [
    "LockTable",
    "TaskTable",
    "TaskqBase",
    "create_taskq_engine",
    "drop_schema",
    "init_schema",
]
