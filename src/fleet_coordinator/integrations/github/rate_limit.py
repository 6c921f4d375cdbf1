"""Client-side rate limiting for GitHub calls.

Calls are spaced at least `min_spacing` seconds apart. When the last known
remaining budget falls below `low_budget_threshold` calls are refused with
RateLimitBudgetLow instead of being sent. A 429 (or a 403 reporting zero
remaining) is retried exactly once if the server asks us to wait no longer
than `max_retry_after` seconds.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from github import GithubException

from .errors import GitHubAPIError, RateLimitBudgetLow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_AFTER = 60


class GitHubRateLimiter:
    """Tracks the API budget and enforces spacing between calls."""

    def __init__(
        self,
        min_spacing: float = 5.0,
        low_budget_threshold: int = 100,
        max_retry_after: int = 30,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.min_spacing = min_spacing
        self.low_budget_threshold = low_budget_threshold
        self.max_retry_after = max_retry_after
        self._clock = clock
        self._sleep = sleep
        self._log = logger_instance or logger

        self.remaining: Optional[int] = None
        self.limit: Optional[int] = None
        self.reset_at: Optional[float] = None
        self._last_call: Optional[float] = None

    def update(self, remaining: Optional[int], limit: Optional[int], reset_at: Optional[float] = None) -> None:
        """Record budget headers from the latest response. Negative values mean unknown."""
        if remaining is not None and remaining >= 0:
            self.remaining = remaining
        if limit is not None and limit >= 0:
            self.limit = limit
        if reset_at:
            self.reset_at = reset_at

    def check_budget(self) -> None:
        if self.remaining is not None and self.remaining < self.low_budget_threshold:
            self._log.warning(
                f"GitHub budget low: {self.remaining}/{self.limit} remaining, refusing call"
            )
            raise RateLimitBudgetLow(self.remaining, self.reset_at)

    def wait_for_slot(self) -> None:
        if self._last_call is not None:
            elapsed = self._clock() - self._last_call
            if elapsed < self.min_spacing:
                self._sleep(self.min_spacing - elapsed)
        self._last_call = self._clock()

    @staticmethod
    def _retry_after(error: GithubException) -> int:
        headers = error.headers or {}
        for key, value in headers.items():
            if key.lower() == "retry-after":
                try:
                    return int(value)
                except (TypeError, ValueError):
                    break
        return DEFAULT_RETRY_AFTER

    def _is_rate_limited(self, error: GithubException) -> bool:
        if error.status == 429:
            return True
        if error.status == 403:
            headers = {k.lower(): v for k, v in (error.headers or {}).items()}
            return str(headers.get("x-ratelimit-remaining", "")) == "0"
        return False

    def execute(self, func: Callable[[], T], operation: str = "GitHub call") -> T:
        """Run one API call under spacing, budget, and single-retry rules."""
        self.check_budget()
        self.wait_for_slot()
        try:
            return func()
        except GithubException as e:
            if not self._is_rate_limited(e):
                raise
            retry_after = self._retry_after(e)
            if retry_after > self.max_retry_after:
                self._log.warning(
                    f"{operation} rate limited, retry-after {retry_after}s exceeds "
                    f"{self.max_retry_after}s, giving up"
                )
                raise GitHubAPIError(e.status, f"Rate limited (retry after {retry_after}s)") from e
            self._log.info(f"{operation} rate limited, retrying once after {retry_after}s")
            self._sleep(retry_after)
            self._last_call = self._clock()
            return func()
