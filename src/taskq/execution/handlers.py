"""Built-in Handlers — simulated task types for demos and load tests.

WHY
───
The engine needs concrete handlers to exercise claim, retry and terminal
failure paths end to end. Each one sleeps for a configurable time
(``TASKQ_HANDLER_*``) and then succeeds, fails at random, or always fails.

ARCHITECTURE
────────────
::

    Handlers (registered by build_default_registry):
      EMAIL        ─ EmailHandler          sleep, succeed
      SMS          ─ SmsHandler            sleep, succeed
      NEWSLETTER   ─ NewsletterHandler     sleep, succeed
      REPORT       ─ ReportHandler         sleep, succeed
      DATACLEANUP  ─ DataCleanupHandler    sleep, succeed
      TAKESLONG    ─ TakesLongHandler      long sleep, succeed
      FAIL         ─ FailHandler           succeeds with 25% chance
      FAILABS      ─ FailAbsoluteHandler   always raises
      (default)    ─ DefaultHandler        sleep, succeed

    Sleeper        ─ injected so tests run instantly (InstantSleeper)

Related modules:
    registry.py — HandlerRegistry these register into
"""

from __future__ import annotations

import random
import time
from typing import Protocol

from taskq.core.errors import TaskProcessingError
from taskq.core.logging import get_logger
from taskq.core.settings import HandlerSettings

from .models import Task, TaskType
from .registry import HandlerRegistry

log = get_logger(__name__)


class Sleeper(Protocol):
    def sleep(self, seconds: float) -> None: ...


class RealSleeper:
    """Blocks the worker thread with ``time.sleep``."""

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class InstantSleeper:
    """Records requested sleeps without blocking."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.calls.append(seconds)


# ── Simulated work ───────────────────────────────────────────────────────


class SimulatedWorkHandler:
    """Sleeps for ``seconds_field`` of :class:`HandlerSettings`, then succeeds."""

    seconds_field = "default_seconds"
    label = "default"

    def __init__(self, settings: HandlerSettings | None = None, sleeper: Sleeper | None = None):
        self.settings = settings or HandlerSettings()
        self.sleeper = sleeper or RealSleeper()

    @property
    def seconds(self) -> float:
        return getattr(self.settings, self.seconds_field)

    def handle(self, task: Task) -> None:
        self.sleeper.sleep(self.seconds)
        log.info("task_handled", task_id=task.id, handler=self.label, payload_size=len(task.payload))


class DefaultHandler(SimulatedWorkHandler):
    """Fallback for task types without a dedicated handler."""


class EmailHandler(SimulatedWorkHandler):
    """Simulates sending an email."""

    seconds_field = "email_seconds"
    label = "email"


class SmsHandler(SimulatedWorkHandler):
    """Simulates sending an SMS."""

    seconds_field = "sms_seconds"
    label = "sms"


class NewsletterHandler(SimulatedWorkHandler):
    """Simulates a newsletter fan-out."""

    seconds_field = "newsletter_seconds"
    label = "newsletter"


class ReportHandler(SimulatedWorkHandler):
    """Simulates report generation."""

    seconds_field = "report_seconds"
    label = "report"


class DataCleanupHandler(SimulatedWorkHandler):
    """Simulates a data clean-up job."""

    seconds_field = "data_cleanup_seconds"
    label = "data_cleanup"


class TakesLongHandler(SimulatedWorkHandler):
    """Simulates a job that runs past the lock TTL."""

    seconds_field = "takes_long_seconds"
    label = "takes_long"


# ── Failing handlers ─────────────────────────────────────────────────────


class FailHandler:
    """Succeeds with probability ``fail_success_chance``, otherwise raises."""

    def __init__(
        self,
        settings: HandlerSettings | None = None,
        sleeper: Sleeper | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings or HandlerSettings()
        self.sleeper = sleeper or RealSleeper()
        self.rng = rng or random.Random()

    def handle(self, task: Task) -> None:
        if self.rng.random() <= self.settings.fail_success_chance:
            self.sleeper.sleep(self.settings.fail_success_seconds)
            log.info("task_handled", task_id=task.id, handler="fail", outcome="lucky")
            return
        self.sleeper.sleep(self.settings.fail_seconds)
        raise TaskProcessingError(
            f"Task {task.id} failed on attempt {task.attempts}",
            context={"task_id": task.id, "attempts": task.attempts},
        )


class FailAbsoluteHandler:
    """Always raises, for exercising terminal failure."""

    def __init__(self, settings: HandlerSettings | None = None, sleeper: Sleeper | None = None):
        self.settings = settings or HandlerSettings()
        self.sleeper = sleeper or RealSleeper()

    def handle(self, task: Task) -> None:
        self.sleeper.sleep(self.settings.fail_absolute_seconds)
        raise TaskProcessingError(
            f"Task {task.id} is designed to fail",
            context={"task_id": task.id, "attempts": task.attempts},
        )


def build_default_registry(
    settings: HandlerSettings | None = None,
    sleeper: Sleeper | None = None,
    rng: random.Random | None = None,
) -> HandlerRegistry:
    """Create a registry holding every built-in handler."""
    settings = settings or HandlerSettings()
    sleeper = sleeper or RealSleeper()

    registry = HandlerRegistry(DefaultHandler(settings, sleeper))
    registry.register(TaskType.EMAIL, EmailHandler(settings, sleeper))
    registry.register(TaskType.SMS, SmsHandler(settings, sleeper))
    registry.register(TaskType.NEWSLETTER, NewsletterHandler(settings, sleeper))
    registry.register(TaskType.REPORT, ReportHandler(settings, sleeper))
    registry.register(TaskType.DATACLEANUP, DataCleanupHandler(settings, sleeper))
    registry.register(TaskType.TAKESLONG, TakesLongHandler(settings, sleeper))
    registry.register(TaskType.FAIL, FailHandler(settings, sleeper, rng))
    registry.register(TaskType.FAILABS, FailAbsoluteHandler(settings, sleeper))
    registry.register(TaskType.DEFAULT, registry.default)
    return registry


__all__ = [
    "DataCleanupHandler",
    "DefaultHandler",
    "EmailHandler",
    "FailAbsoluteHandler",
    "FailHandler",
    "InstantSleeper",
    "NewsletterHandler",
    "RealSleeper",
    "ReportHandler",
    "Sleeper",
    "SmsHandler",
    "TakesLongHandler",
    "build_default_registry",
]
