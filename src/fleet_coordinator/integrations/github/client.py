"""GitHub client for issue, plan and PR operations."""

import logging
import re
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from github import Auth, Github, GithubException
from github.Repository import Repository
from requests.exceptions import RequestException

from ...core.config import GitHubConfig
from .errors import GitHubAPIError, MergeConflictError
from .models import (
    CommentSnapshot,
    IssueSnapshot,
    PullRequestSnapshot,
    ReviewSnapshot,
    as_utc,
)
from .rate_limit import GitHubRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ISSUE_URL_NUMBER_RE = re.compile(r"/issues/(\d+)$")
# Missing or already-gone resources on cleanup calls
_IDEMPOTENT_STATUSES = (404, 422)


def _login(user) -> Optional[str]:
    return user.login if user is not None else None


def _issue_snapshot(issue) -> IssueSnapshot:
    return IssueSnapshot(
        number=issue.number,
        title=issue.title or "",
        body=issue.body or "",
        state=issue.state,
        labels=[label.name for label in issue.labels],
        assignees=[a.login for a in issue.assignees],
        author=_login(issue.user),
        created_at=as_utc(issue.created_at),
        updated_at=as_utc(issue.updated_at),
        is_pull_request=issue.pull_request is not None,
    )


def _comment_snapshot(comment, issue_number: Optional[int] = None) -> CommentSnapshot:
    if issue_number is None:
        match = _ISSUE_URL_NUMBER_RE.search(comment.issue_url or "")
        issue_number = int(match.group(1)) if match else None
    return CommentSnapshot(
        id=comment.id,
        author=_login(comment.user),
        body=comment.body or "",
        created_at=as_utc(comment.created_at),
        issue_number=issue_number,
    )


def _pull_snapshot(pr) -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=pr.number,
        title=pr.title or "",
        author=_login(pr.user),
        head_ref=pr.head.ref,
        draft=bool(pr.draft),
        created_at=as_utc(pr.created_at),
        html_url=pr.html_url or "",
        requested_reviewers=[u.login for u in (pr.requested_reviewers or [])],
    )


class GitHubClient:
    """GitHub API client used by every coordination component.

    All calls go through the rate limiter and PyGithub errors surface as
    GitHubAPIError. Cleanup calls (branch delete, assignee removal, PR close)
    treat 404/422 as success so they can be safely repeated.
    """

    def __init__(
        self,
        config: GitHubConfig,
        gh: Optional[Github] = None,
        rate_limiter: Optional[GitHubRateLimiter] = None,
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.config = config
        if gh is None:
            auth = Auth.Token(config.token) if config.token else None
            gh = Github(auth=auth, timeout=config.request_timeout)
        self.gh = gh
        self.rate_limiter = rate_limiter or GitHubRateLimiter(
            min_spacing=config.api_min_spacing,
            low_budget_threshold=config.low_budget_threshold,
            max_retry_after=config.max_retry_after,
        )
        self._log = logger_instance or logger
        self._repos: Dict[str, Repository] = {}
        self._username: Optional[str] = config.username or None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _sync_budget(self) -> None:
        try:
            remaining, limit = self.gh.rate_limiting
            reset_at = self.gh.rate_limiting_resettime
        except (GithubException, AttributeError, TypeError, ValueError):
            return
        self.rate_limiter.update(remaining, limit, reset_at)

    def _call(
        self,
        operation: str,
        func: Callable[[], T],
        *,
        tolerate: Sequence[int] = (),
    ) -> Optional[T]:
        try:
            result = self.rate_limiter.execute(func, operation=operation)
        except GithubException as e:
            if e.status in tolerate:
                self._log.debug(f"{operation}: {e.status} treated as success")
                return None
            message = e.data.get("message", str(e)) if isinstance(e.data, dict) else str(e)
            raise GitHubAPIError(e.status, f"{operation}: {message}") from e
        except RequestException as e:
            # Transport failure, no HTTP status
            raise GitHubAPIError(None, f"{operation}: {type(e).__name__}: {e}") from e
        finally:
            self._sync_budget()
        return result

    def _repo(self, owner: str, repo: str) -> Repository:
        key = f"{owner}/{repo}"
        if key not in self._repos:
            self._repos[key] = self._call(f"get_repo {key}", lambda: self.gh.get_repo(key))
        return self._repos[key]

    @property
    def username(self) -> str:
        """Login of the authenticated agent."""
        if not self._username:
            self._username = self._call("get_user", lambda: self.gh.get_user().login)
        return self._username

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def get_issue(self, owner: str, repo: str, number: int) -> IssueSnapshot:
        r = self._repo(owner, repo)
        return self._call(
            f"get_issue {owner}/{repo}#{number}",
            lambda: _issue_snapshot(r.get_issue(number)),
        )

    def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        labels: Optional[List[str]] = None,
        since: Optional[datetime] = None,
    ) -> List[IssueSnapshot]:
        """List issues (pull requests included, flagged by is_pull_request)."""
        r = self._repo(owner, repo)
        kwargs = {"state": state, "sort": "created", "direction": "asc"}
        if labels:
            kwargs["labels"] = labels
        if since is not None:
            kwargs["since"] = since
        return self._call(
            f"list_issues {owner}/{repo}",
            lambda: [_issue_snapshot(i) for i in r.get_issues(**kwargs)],
        )

    def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        labels: Optional[List[str]] = None,
    ) -> IssueSnapshot:
        r = self._repo(owner, repo)
        issue = self._call(
            f"create_issue {owner}/{repo}",
            lambda: _issue_snapshot(r.create_issue(title=title, body=body, labels=labels or [])),
        )
        self._log.info(f"Created issue {owner}/{repo}#{issue.number}: {title}")
        return issue

    def update_issue_body(self, owner: str, repo: str, number: int, body: str) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"update_issue {owner}/{repo}#{number}",
            lambda: r.get_issue(number).edit(body=body),
        )

    def set_labels(self, owner: str, repo: str, number: int, labels: List[str]) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"set_labels {owner}/{repo}#{number}",
            lambda: r.get_issue(number).edit(labels=labels),
        )

    def close_issue(
        self, owner: str, repo: str, number: int, labels: Optional[List[str]] = None
    ) -> None:
        r = self._repo(owner, repo)
        kwargs = {"state": "closed"}
        if labels is not None:
            kwargs["labels"] = labels
        self._call(
            f"close_issue {owner}/{repo}#{number}",
            lambda: r.get_issue(number).edit(**kwargs),
        )

    def reopen_issue(self, owner: str, repo: str, number: int) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"reopen_issue {owner}/{repo}#{number}",
            lambda: r.get_issue(number).edit(state="open"),
        )

    def add_assignee(self, owner: str, repo: str, number: int, login: str) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"add_assignee {owner}/{repo}#{number}",
            lambda: r.get_issue(number).add_to_assignees(login),
        )

    def remove_assignee(self, owner: str, repo: str, number: int, login: str) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"remove_assignee {owner}/{repo}#{number}",
            lambda: r.get_issue(number).remove_from_assignees(login),
            tolerate=_IDEMPOTENT_STATUSES,
        )

    def create_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        """Comment on an issue or pull request (they share a number space)."""
        r = self._repo(owner, repo)
        self._call(
            f"comment {owner}/{repo}#{number}",
            lambda: r.get_issue(number).create_comment(body),
        )

    def list_comments(self, owner: str, repo: str, number: int) -> List[CommentSnapshot]:
        r = self._repo(owner, repo)
        return self._call(
            f"list_comments {owner}/{repo}#{number}",
            lambda: [_comment_snapshot(c, number) for c in r.get_issue(number).get_comments()],
        )

    def list_repo_comments(
        self, owner: str, repo: str, since: Optional[datetime] = None
    ) -> List[CommentSnapshot]:
        """Issue and PR comments across the whole repository."""
        r = self._repo(owner, repo)
        kwargs = {"sort": "created", "direction": "asc"}
        if since is not None:
            kwargs["since"] = since
        return self._call(
            f"list_repo_comments {owner}/{repo}",
            lambda: [_comment_snapshot(c) for c in r.get_issues_comments(**kwargs)],
        )

    # ------------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------------

    def list_open_pulls(self, owner: str, repo: str) -> List[PullRequestSnapshot]:
        r = self._repo(owner, repo)
        return self._call(
            f"list_pulls {owner}/{repo}",
            lambda: [_pull_snapshot(pr) for pr in r.get_pulls(state="open")],
        )

    def get_reviews(self, owner: str, repo: str, number: int) -> List[ReviewSnapshot]:
        r = self._repo(owner, repo)

        def fetch():
            return [
                ReviewSnapshot(
                    user=_login(review.user),
                    state=review.state or "",
                    body=review.body or "",
                    submitted_at=as_utc(review.submitted_at),
                )
                for review in r.get_pull(number).get_reviews()
            ]

        return self._call(f"get_reviews {owner}/{repo}#{number}", fetch)

    def create_pull(
        self, owner: str, repo: str, title: str, body: str, head: str, base: str
    ) -> PullRequestSnapshot:
        r = self._repo(owner, repo)
        pr = self._call(
            f"create_pull {owner}/{repo} {head}",
            lambda: _pull_snapshot(r.create_pull(title=title, body=body, head=head, base=base)),
        )
        self._log.info(f"Opened PR {owner}/{repo}#{pr.number} from {head}")
        return pr

    def request_reviewers(self, owner: str, repo: str, number: int, reviewers: List[str]) -> None:
        if not reviewers:
            return
        r = self._repo(owner, repo)
        self._call(
            f"request_reviewers {owner}/{repo}#{number}",
            lambda: r.get_pull(number).create_review_request(reviewers=reviewers),
        )

    def list_collaborators(self, owner: str, repo: str) -> List[str]:
        r = self._repo(owner, repo)
        return self._call(
            f"list_collaborators {owner}/{repo}",
            lambda: [u.login for u in r.get_collaborators()],
        )

    def merge_pull(
        self,
        owner: str,
        repo: str,
        number: int,
        commit_title: str,
        merge_method: Optional[str] = None,
    ) -> None:
        """Merge a PR. Conflicts and non-mergeable states raise MergeConflictError."""
        r = self._repo(owner, repo)
        method = merge_method or self.config.merge_strategy
        try:
            status = self._call(
                f"merge {owner}/{repo}#{number}",
                lambda: r.get_pull(number).merge(commit_title=commit_title, merge_method=method),
            )
        except GitHubAPIError as e:
            if e.status in (405, 409) or "not mergeable" in e.message.lower():
                raise MergeConflictError(e.status, e.message) from e
            raise
        if status is not None and not status.merged:
            raise MergeConflictError(405, status.message or "Pull request is not mergeable")
        self._log.info(f"Merged {owner}/{repo}#{number} via {method}")

    def close_pull(self, owner: str, repo: str, number: int) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"close_pull {owner}/{repo}#{number}",
            lambda: r.get_pull(number).edit(state="closed"),
            tolerate=_IDEMPOTENT_STATUSES,
        )

    # ------------------------------------------------------------------
    # Repository contents
    # ------------------------------------------------------------------

    def delete_branch(self, owner: str, repo: str, branch: str) -> None:
        r = self._repo(owner, repo)
        self._call(
            f"delete_branch {owner}/{repo}:{branch}",
            lambda: r.get_git_ref(f"heads/{branch}").delete(),
            tolerate=_IDEMPOTENT_STATUSES,
        )

    def get_file_content(self, owner: str, repo: str, path: str) -> Optional[str]:
        """Decoded text of a file on the default branch, or None if it does not exist."""
        r = self._repo(owner, repo)
        content = self._call(
            f"get_contents {owner}/{repo}:{path}",
            lambda: r.get_contents(path),
            tolerate=(404,),
        )
        if content is None or isinstance(content, list):
            return None
        return content.decoded_content.decode("utf-8", errors="replace")
