"""Tests for the event log and task-created publisher."""

from __future__ import annotations

import pytest

from taskq.execution.events import EventKind, EventLog, TaskEventPublisher


class TestEventLog:
    def test_newest_first(self):
        log = EventLog(capacity=10)
        log.record(EventKind.CREATED, "Task-1", "created")
        log.record(EventKind.COMPLETED, "Task-1", "done")
        kinds = [e.kind for e in log.entries()]
        assert kinds == [EventKind.COMPLETED, EventKind.CREATED]

    def test_bounded_drops_oldest(self):
        log = EventLog(capacity=3)
        for i in range(5):
            log.record(EventKind.CREATED, f"Task-{i}", "created")
        assert len(log) == 3
        assert [e.task_id for e in log.entries()] == ["Task-4", "Task-3", "Task-2"]

    def test_recent_renders_and_limits(self):
        log = EventLog()
        log.record(EventKind.FAILED, "Task-1", "boom")
        log.record(EventKind.RETRY_SCHEDULED, "Task-1", "retry in 1000ms after attempt 1")
        recent = log.recent(limit=1)
        assert len(recent) == 1
        assert "[RETRY_SCHEDULED] Task-1: retry in 1000ms after attempt 1" in recent[0]

    def test_clear(self):
        log = EventLog()
        log.record(EventKind.CREATED, "Task-1", "created")
        log.clear()
        assert log.recent() == []

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            EventLog(capacity=0)


class TestTaskEventPublisher:
    def test_publish_reaches_subscribers(self):
        publisher = TaskEventPublisher()
        seen: list[str] = []
        publisher.subscribe(seen.append)
        publisher.publish_created("Task-1")
        assert seen == ["Task-1"]

    def test_unsubscribe(self):
        publisher = TaskEventPublisher()
        seen: list[str] = []
        sub_id = publisher.subscribe(seen.append)
        assert publisher.unsubscribe(sub_id) is True
        assert publisher.unsubscribe(sub_id) is False
        publisher.publish_created("Task-1")
        assert seen == []
        assert publisher.subscription_count == 0

    def test_failing_listener_does_not_block_others(self):
        publisher = TaskEventPublisher()
        seen: list[str] = []

        def broken(task_id):
            raise RuntimeError("listener down")

        publisher.subscribe(broken)
        publisher.subscribe(seen.append)
        publisher.publish_created("Task-1")
        assert seen == ["Task-1"]
