"""Tests for the taskq engine factory and schema helpers."""

from __future__ import annotations

from sqlalchemy import inspect, text

from taskq.core.database import create_taskq_engine, drop_schema, init_schema


class TestCreateEngine:
    def test_sqlite_file_uses_wal(self, tmp_path):
        engine = create_taskq_engine(f"sqlite:///{tmp_path / 'wal.db'}")
        try:
            with engine.connect() as conn:
                mode = conn.execute(text("PRAGMA journal_mode")).scalar()
                timeout = conn.execute(text("PRAGMA busy_timeout")).scalar()
            assert str(mode).lower() == "wal"
            assert timeout == 30000
        finally:
            engine.dispose()

    def test_custom_busy_timeout(self, tmp_path):
        engine = create_taskq_engine(f"sqlite:///{tmp_path / 'bt.db'}", busy_timeout_seconds=2)
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 2000
        finally:
            engine.dispose()


class TestSchema:
    def test_init_creates_tables(self, db_engine):
        tables = set(inspect(db_engine).get_table_names())
        assert {"taskq_tasks", "taskq_locks"} <= tables

    def test_init_is_idempotent(self, db_engine):
        init_schema(db_engine)
        assert "taskq_tasks" in inspect(db_engine).get_table_names()

    def test_drop(self, db_engine):
        drop_schema(db_engine)
        assert "taskq_tasks" not in inspect(db_engine).get_table_names()
