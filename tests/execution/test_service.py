"""Tests for TaskService submission and reads."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from taskq.core.cache import NullTaskCache
from taskq.core.errors import DuplicateTaskError
from taskq.execution.events import EventKind
from taskq.execution.models import TaskStatus, TaskType
from taskq.execution.service import TaskService


class TestCreateTask:
    def test_persists_queued(self, service, repository):
        task = service.create_task("hello", TaskType.EMAIL, owner="alice")
        found = repository.find_by_id(task.id)
        assert found.status == TaskStatus.QUEUED
        assert found.attempts == 0
        assert found.max_retries == 3
        assert found.owner == "alice"

    def test_explicit_max_retries_and_id(self, service):
        task = service.create_task("x", "sms", max_retries=5, task_id="Task-fixed")
        assert task.id == "Task-fixed"
        assert task.type == "SMS"
        assert task.max_retries == 5

    def test_publishes_after_commit(self, repository, publisher):
        visible: list[bool] = []
        publisher.subscribe(lambda task_id: visible.append(repository.exists(task_id)))
        TaskService(repository, publisher).create_task("x", TaskType.EMAIL)
        assert visible == [True]

    def test_records_created_event(self, service, events):
        task = service.create_task("x", TaskType.REPORT)
        entry = events.entries()[0]
        assert entry.kind == EventKind.CREATED
        assert entry.task_id == task.id

    def test_caches_new_record(self, service, cache):
        task = service.create_task("x", TaskType.EMAIL)
        assert cache.get(task.id).status == TaskStatus.QUEUED

    def test_existing_id_is_never_overwritten(self, service, processor, repository, events):
        submitted: list[str] = []
        service.publisher.subscribe(submitted.append)
        task = service.create_task("doomed", TaskType.FAILABS, max_retries=1, task_id="Task-taken")
        processor.claim_and_process(task.id)
        before = repository.find_by_id(task.id)
        submitted.clear()
        logged = len(events)

        with pytest.raises(DuplicateTaskError):
            service.create_task("y", TaskType.EMAIL, task_id="Task-taken")

        after = repository.find_by_id(task.id)
        assert after == before
        assert after.status == TaskStatus.FAILED
        assert after.attempts == 1
        assert submitted == []
        assert len(events) == logged

    def test_negative_retries_rejected(self, service):
        with pytest.raises(ValueError):
            service.create_task("x", TaskType.EMAIL, max_retries=-1)


class TestReads:
    def test_get_task_reads_through(self, repository, publisher):
        backend_cache = MagicMock()
        backend_cache.get.return_value = None
        service = TaskService(repository, publisher, cache=backend_cache)
        task = service.create_task("x", TaskType.EMAIL)
        backend_cache.put.reset_mock()

        found = service.get_task(task.id)

        assert found.id == task.id
        backend_cache.put.assert_called_once()

    def test_get_task_prefers_cache(self, repository, publisher):
        cached = MagicMock()
        service = TaskService(repository, publisher, cache=MagicMock(**{"get.return_value": cached}))
        assert service.get_task("Task-anything") is cached

    def test_get_missing(self, service):
        assert service.get_task("Task-missing") is None

    def test_list_tasks_filters(self, service):
        service.create_task("a", TaskType.EMAIL, owner="alice")
        service.create_task("b", TaskType.SMS, owner="bob")
        assert len(service.list_tasks()) == 2
        assert [t.payload for t in service.list_tasks(owner="bob")] == ["b"]
        assert [t.payload for t in service.list_tasks(task_type=TaskType.EMAIL)] == ["a"]
        assert len(service.list_tasks(status=TaskStatus.COMPLETED)) == 0

    def test_delete_task(self, service, cache):
        task = service.create_task("x", TaskType.EMAIL)
        assert service.delete_task(task.id) is True
        assert service.get_task(task.id) is None
        assert cache.get(task.id) is None
        assert service.delete_task(task.id) is False

    def test_default_cache_is_null(self, repository, publisher):
        assert isinstance(TaskService(repository, publisher).cache, NullTaskCache)
