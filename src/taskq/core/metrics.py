"""Prometheus-style metrics for the processing engine.

The engine only *emits*: counters for submitted / claimed / completed /
failed / retried tasks and a timer around handler execution. Export is a
side channel (``export_prometheus()`` or ``collect()``).

Example:
    >>> metrics = TaskMetrics(MetricsRegistry())
    >>> metrics.completed.labels(task_type="EMAIL").inc()
    >>> with metrics.processing_time():
    ...     run_handler()
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Labels:
    """Immutable label set for metrics."""

    items: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str] | None) -> Labels:
        if not d:
            return cls(())
        return cls(tuple(sorted(d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self.items)


class Metric(ABC):
    """Base class for metrics."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @abstractmethod
    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""
        ...


class Counter(Metric):
    """A monotonically increasing counter."""

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: str) -> CounterChild:
        return CounterChild(self, Labels.from_dict(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    @property
    def value(self) -> float:
        """Sum across all label sets."""
        with self._lock:
            return sum(self._values.values())

    def _inc(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def _get(self, labels: Labels) -> float:
        with self._lock:
            return self._values.get(labels, 0.0)

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": "counter", "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]


class CounterChild:
    """Counter with fixed labels."""

    def __init__(self, counter: Counter, labels: Labels):
        self._counter = counter
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._counter._inc(self._labels, value)

    @property
    def value(self) -> float:
        return self._counter._get(self._labels)


class Histogram(Metric):
    """A distribution of observed durations."""

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, float("inf"))

    def __init__(self, name: str, description: str = "", buckets: tuple[float, ...] | None = None):
        super().__init__(name, description)
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._data: dict[Labels, dict[str, Any]] = {}

    def labels(self, **kwargs: str) -> HistogramChild:
        return HistogramChild(self, Labels.from_dict(kwargs))

    def observe(self, value: float) -> None:
        self.labels().observe(value)

    def time(self, **labels: str) -> Timer:
        """Context manager that observes the elapsed wall time."""
        return Timer(self.labels(**labels))

    def _empty(self) -> dict[str, Any]:
        return {"buckets": dict.fromkeys(self._buckets, 0), "sum": 0.0, "count": 0, "max": 0.0}

    def _observe(self, labels: Labels, value: float) -> None:
        with self._lock:
            data = self._data.setdefault(labels, self._empty())
            data["sum"] += value
            data["count"] += 1
            data["max"] = max(data["max"], value)
            for bucket in self._buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def _get(self, labels: Labels) -> dict[str, Any]:
        with self._lock:
            data = self._data.get(labels)
            return dict(data) if data else self._empty()

    @property
    def count(self) -> int:
        with self._lock:
            return sum(d["count"] for d in self._data.values())

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": "histogram",
                    "labels": labels.to_dict(),
                    "buckets": dict(data["buckets"]),
                    "sum": data["sum"],
                    "count": data["count"],
                    "max": data["max"],
                }
                for labels, data in self._data.items()
            ]


class HistogramChild:
    """Histogram with fixed labels."""

    def __init__(self, histogram: Histogram, labels: Labels):
        self._histogram = histogram
        self._labels = labels

    def observe(self, value: float) -> None:
        self._histogram._observe(self._labels, value)

    @property
    def data(self) -> dict[str, Any]:
        return self._histogram._get(self._labels)


class Timer:
    """Context manager for timing operations."""

    def __init__(self, histogram_child: HistogramChild):
        self._histogram_child = histogram_child
        self._start: float | None = None
        self.elapsed: float = 0.0

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() - (self._start or 0.0)
        self._histogram_child.observe(self.elapsed)


class MetricsRegistry:
    """Registry of all metrics for collection and export."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, description: str = "") -> Counter:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Counter(name, description)
            return self._metrics[name]  # type: ignore[return-value]

    def histogram(self, name: str, description: str = "", buckets: tuple[float, ...] | None = None) -> Histogram:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = Histogram(name, description, buckets)
            return self._metrics[name]  # type: ignore[return-value]

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results: list[dict[str, Any]] = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for data in self.collect():
            name = data["name"]
            labels = data.get("labels", {})
            label_str = "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}" if labels else ""

            if data["type"] == "counter":
                lines.append(f"{name}{label_str} {data['value']}")
            elif data["type"] == "histogram":
                for bucket, count in data["buckets"].items():
                    bucket_labels = f'{label_str[:-1]},le="{bucket}"}}' if label_str else f'{{le="{bucket}"}}'
                    lines.append(f"{name}_bucket{bucket_labels} {count}")
                lines.append(f"{name}_sum{label_str} {data['sum']}")
                lines.append(f"{name}_count{label_str} {data['count']}")
        return "\n".join(lines)


class TaskMetrics:
    """Pre-defined counters and timer for the processing engine."""

    def __init__(self, registry: MetricsRegistry | None = None):
        self.registry = registry or MetricsRegistry()
        reg = self.registry

        self.submitted = reg.counter("taskq_tasks_submitted_total", "Task ids submitted to the worker pool")
        self.claimed = reg.counter("taskq_tasks_claimed_total", "Tasks successfully claimed for processing")
        self.completed = reg.counter("taskq_tasks_completed_total", "Tasks completed successfully")
        self.failed = reg.counter("taskq_tasks_failed_total", "Handler failures")
        self.retried = reg.counter("taskq_tasks_retried_total", "Automatic retries scheduled")
        self.duration = reg.histogram(
            "taskq_task_processing_duration_seconds",
            "Time spent executing task handlers",
        )

    def processing_time(self, task_type: str = "") -> Timer:
        return self.duration.time(task_type=task_type) if task_type else self.duration.time()

    def snapshot(self) -> dict[str, float]:
        """Flat view of the counters, handy for tests and status output."""
        return {
            "submitted": self.submitted.value,
            "claimed": self.claimed.value,
            "completed": self.completed.value,
            "failed": self.failed.value,
            "retried": self.retried.value,
            "processed": float(self.duration.count),
        }


__all__ = [
    "Counter",
    "Histogram",
    "MetricsRegistry",
    "TaskMetrics",
    "Timer",
]
