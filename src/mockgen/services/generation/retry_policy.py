"""Retry backoff for failed generation attempts.

Exponential backoff with jitter:

    delay = min(base * 2^(attempts - 1), max) * (1 +/- jitter * U(0, 1))

so the first retry waits about ``base`` seconds, each further retry doubles it,
and jitter spreads out jobs that failed together during the same outage.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from mockgen.core.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 30.0
    max_seconds: float = 900.0
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_seconds=settings.job_backoff_base_seconds,
            max_seconds=settings.job_backoff_max_seconds,
            jitter=settings.job_backoff_jitter,
        )

    def backoff_seconds(self, attempts: int, rng: random.Random | None = None) -> float:
        """Delay before the next attempt after ``attempts`` failed attempts.

        Args:
            attempts: Attempts consumed so far (1 after the first failure)
            rng: Random source for jitter (module-level random if omitted)

        Returns:
            Non-negative delay in seconds
        """
        exponent = max(attempts, 1) - 1
        delay = min(self.base_seconds * (2**exponent), self.max_seconds)
        if self.jitter:
            u = (rng or random).random()
            delay *= 1 + self.jitter * (2 * u - 1)
        return max(0.0, delay)

    def next_retry_at(
        self, attempts: int, now: datetime, rng: random.Random | None = None
    ) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds(attempts, rng))
