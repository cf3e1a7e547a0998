"""Backoff policies for automatic retries.

The delay is a function of the *post-failure* attempt count, i.e. the
``attempts`` value the claim step already incremented. It is never applied
to the first attempt.

Example:
    >>> from taskq.execution.retry import ExponentialBackoff
    >>>
    >>> policy = ExponentialBackoff(base_delay=1.0)
    >>> [policy.delay(n) for n in (1, 2, 3)]
    [1.0, 2.0, 4.0]
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskq.core.settings import TaskqSettings


class BackoffPolicy(ABC):
    """Abstract base for retry delay policies."""

    @abstractmethod
    def delay(self, attempts: int) -> float:
        """Seconds to wait before re-submitting a task.

        Args:
            attempts: Attempts consumed so far (1 after the first failure)

        Returns:
            Delay in seconds
        """
        ...

    def should_retry(self, attempts: int, max_retries: int) -> bool:
        """Automatic retry is allowed only while ``attempts < max_retries``."""
        return attempts < max_retries

    def delay_ms(self, attempts: int) -> int:
        return int(self.delay(attempts) * 1000)


@dataclass
class ExponentialBackoff(BackoffPolicy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * multiplier ** max(0, attempts - 1), max_delay) ± jitter

    Attributes:
        base_delay: Delay after the first failure, in seconds
        multiplier: Exponential multiplier (default: 2)
        max_delay: Optional cap in seconds
        jitter: Spread delays to avoid synchronized retry storms
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float | None = None
    jitter: bool = False
    jitter_range: float = 0.25
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0.0 <= self.jitter_range <= 1.0:
            raise ValueError("jitter_range must be within [0, 1]")

    def delay(self, attempts: int) -> float:
        delay = self.base_delay * (self.multiplier ** max(0, attempts - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + self.rng.uniform(-jitter_amount, jitter_amount))

        return delay

    @classmethod
    def from_settings(cls, settings: TaskqSettings) -> ExponentialBackoff:
        return cls(
            base_delay=settings.backoff_base_seconds,
            multiplier=settings.backoff_multiplier,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        )


@dataclass
class ConstantBackoff(BackoffPolicy):
    """Constant delay between retries."""

    seconds: float = 1.0

    def delay(self, attempts: int) -> float:
        return self.seconds


__all__ = ["BackoffPolicy", "ConstantBackoff", "ExponentialBackoff"]
