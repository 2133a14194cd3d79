"""
Retry scheduling for failed jobs.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobqueue.config.settings import Settings


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_ms: int
    scheduled_for: datetime | None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with a cap.

    The n-th attempt (1-based) waits base_delay_ms * multiplier ** (n - 1),
    never more than max_delay_ms. A job is retried while attempts <= max_retries
    and dead-lettered once attempts exceeds it.
    """

    base_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 30000
    jitter_ratio: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_ms=settings.queue_retry_delay_ms,
            multiplier=settings.queue_retry_backoff_multiplier,
            max_delay_ms=settings.queue_max_retry_delay_ms,
            jitter_ratio=settings.queue_retry_jitter_ratio,
        )

    def delay_ms(self, attempts: int) -> int:
        """Calculate the delay before the next run after `attempts` failed claims."""
        exponent = max(attempts, 1) - 1
        try:
            delay = min(self.base_delay_ms * self.multiplier**exponent, self.max_delay_ms)
        except OverflowError:
            delay = self.max_delay_ms

        if self.jitter_ratio:
            # Symmetric jitter, clamped so the cap still holds
            delay += delay * self.jitter_ratio * (2 * random.random() - 1)

        return int(min(max(delay, 0), self.max_delay_ms))

    def decide(self, attempts: int, max_retries: int, now: datetime) -> RetryDecision:
        if attempts > max_retries:
            return RetryDecision(retry=False, delay_ms=0, scheduled_for=None)

        delay = self.delay_ms(attempts)
        return RetryDecision(
            retry=True,
            delay_ms=delay,
            scheduled_for=now + timedelta(milliseconds=delay),
        )
