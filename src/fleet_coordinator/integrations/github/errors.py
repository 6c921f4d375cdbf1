"""Error types raised by the GitHub integration."""

from typing import Optional


class GitHubAPIError(Exception):
    """A GitHub call failed. `status` is the HTTP status when one was returned."""

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(f"GitHub API error {status}: {message}" if status else message)


class RateLimitBudgetLow(GitHubAPIError):
    """Remaining request budget is below the configured floor; the call was not made."""

    def __init__(self, remaining: int, reset_at: Optional[float] = None):
        self.remaining = remaining
        self.reset_at = reset_at
        super().__init__(503, f"Rate limit budget low ({remaining} remaining)")


class MergeConflictError(GitHubAPIError):
    """The pull request cannot be merged as-is."""
