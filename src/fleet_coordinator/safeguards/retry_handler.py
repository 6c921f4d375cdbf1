"""Retry scheduling with exponential backoff and jitter."""

import random
from datetime import datetime, timedelta
from typing import Callable


class RetryHandler:
    """
    Computes when a failed outbound action may be retried.

    Logic:
    - Backoff: initial * multiplier^(attempt-1), plus 0..jitter of that as random spread
    - Never longer than max_backoff seconds
    - After max_attempts the caller stops retrying
    """

    def __init__(
        self,
        initial_backoff: float = 30,
        max_backoff: float = 1800,
        multiplier: float = 2,
        jitter: float = 0.3,
        max_attempts: int = 5,
        rng: Callable[[], float] = random.random,
    ):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._rng = rng

    def calculate_backoff(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) attempt."""
        exponential = self.initial_backoff * (self.multiplier ** max(attempt - 1, 0))
        spread = self._rng() * self.jitter * exponential
        return min(exponential + spread, self.max_backoff)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.calculate_backoff(attempt))
