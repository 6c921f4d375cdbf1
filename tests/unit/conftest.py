"""Shared fixtures for unit tests.

FakeGitHub is an in-memory stand-in for GitHubClient. It keeps issues,
comments and pull requests as snapshot models so plan stores, claimers and
lifecycle controllers can be exercised end to end without the network.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from fleet_coordinator.integrations.github.errors import GitHubAPIError, MergeConflictError
from fleet_coordinator.integrations.github.models import (
    CommentSnapshot,
    IssueSnapshot,
    PullRequestSnapshot,
    ReviewSnapshot,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

SAMPLE_PLAN_BODY = """# [PLAN] Add search

## Goal
Let users search notes.

## Context
Notes live in SQLite.

## Tasks

### Task 1: Add search index
**Status:** pending
**Assignee:** (empty if unclaimed)
**Estimate:** 2h
**Dependencies:** none
**Files:**
- `src/index.py`

**Description:**
Build an FTS index.

---

### Task 2: Search endpoint
**Status:** pending
**Assignee:** (empty if unclaimed)
**Dependencies:** Task 1

**Description:**
Expose /search.

---

## Verification
- [ ] All tasks completed
- [x] Tests pass
"""


class Clock:
    """Settable time source for components that take a `now` callable."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current


class FakeGitHub:
    def __init__(self, username: str = "agent-a"):
        self.username = username
        self.issues: Dict[int, IssueSnapshot] = {}
        self.comments: Dict[int, List[CommentSnapshot]] = {}
        self.pulls: Dict[int, PullRequestSnapshot] = {}
        self.reviews: Dict[int, List[ReviewSnapshot]] = {}
        self.files: Dict[str, str] = {}
        self.collaborators: List[str] = [username]
        self.conflicts: set = set()
        self.merged: List[int] = []
        self.closed_pulls: List[int] = []
        self.deleted_branches: List[str] = []
        self.body_updates = 0
        self.fail_add_assignee = False
        self.fail_get_issue = False
        self._next_number = 1
        self._next_comment_id = 1

    def _number(self) -> int:
        number = self._next_number
        self._next_number += 1
        return number

    # Test helpers

    def add_issue(
        self,
        title: str,
        body: str = "",
        labels: Optional[List[str]] = None,
        author: Optional[str] = "human",
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        state: str = "open",
    ) -> IssueSnapshot:
        issue = IssueSnapshot(
            number=self._number(),
            title=title,
            body=body,
            state=state,
            labels=list(labels or []),
            author=author,
            created_at=created_at or NOW,
            updated_at=updated_at or created_at or NOW,
        )
        self.issues[issue.number] = issue
        return issue

    def add_plan(self, body: str = SAMPLE_PLAN_BODY, title: str = "[PLAN] Add search", **kwargs) -> IssueSnapshot:
        kwargs.setdefault("labels", ["plan", "plan:active"])
        kwargs.setdefault("author", self.username)
        return self.add_issue(title, body, **kwargs)

    def add_comment(
        self, number: int, body: str, author: str = "human", created_at: Optional[datetime] = None
    ) -> CommentSnapshot:
        comment = CommentSnapshot(
            id=self._next_comment_id,
            author=author,
            body=body,
            created_at=created_at or NOW,
            issue_number=number,
        )
        self._next_comment_id += 1
        self.comments.setdefault(number, []).append(comment)
        return comment

    def add_pull(
        self,
        head_ref: str,
        author: Optional[str] = None,
        title: str = "task(1): Add search index",
        created_at: Optional[datetime] = None,
        requested_reviewers: Optional[List[str]] = None,
        draft: bool = False,
    ) -> PullRequestSnapshot:
        pr = PullRequestSnapshot(
            number=self._number(),
            title=title,
            author=author or self.username,
            head_ref=head_ref,
            draft=draft,
            created_at=created_at or NOW,
            html_url="",
            requested_reviewers=list(requested_reviewers or []),
        )
        pr.html_url = f"https://github.com/acme/widgets/pull/{pr.number}"
        self.pulls[pr.number] = pr
        return pr

    def comment_bodies(self, number: int) -> List[str]:
        return [c.body for c in self.comments.get(number, [])]

    # GitHubClient surface

    def get_issue(self, owner, repo, number):
        if self.fail_get_issue:
            raise GitHubAPIError(502, "Bad Gateway")
        return self.issues[number].model_copy(deep=True)

    def list_issues(self, owner, repo, state="open", labels=None, since=None):
        result = []
        for issue in sorted(self.issues.values(), key=lambda i: i.number):
            if state != "all" and issue.state != state:
                continue
            if labels and not all(label in issue.labels for label in labels):
                continue
            result.append(issue.model_copy(deep=True))
        return result

    def create_issue(self, owner, repo, title, body, labels=None):
        return self.add_issue(title, body, labels=labels, author=self.username).model_copy()

    def update_issue_body(self, owner, repo, number, body):
        self.body_updates += 1
        self.issues[number].body = body

    def set_labels(self, owner, repo, number, labels):
        self.issues[number].labels = list(labels)

    def close_issue(self, owner, repo, number, labels=None):
        self.issues[number].state = "closed"
        if labels is not None:
            self.issues[number].labels = list(labels)

    def reopen_issue(self, owner, repo, number):
        self.issues[number].state = "open"

    def add_assignee(self, owner, repo, number, login):
        if self.fail_add_assignee:
            raise GitHubAPIError(422, "cannot assign")
        if login not in self.issues[number].assignees:
            self.issues[number].assignees.append(login)

    def remove_assignee(self, owner, repo, number, login):
        if login in self.issues[number].assignees:
            self.issues[number].assignees.remove(login)

    def create_comment(self, owner, repo, number, body):
        self.add_comment(number, body, author=self.username)

    def list_comments(self, owner, repo, number):
        return [c.model_copy() for c in self.comments.get(number, [])]

    def list_repo_comments(self, owner, repo, since=None):
        everything = [c for comments in self.comments.values() for c in comments]
        if since is not None:
            everything = [c for c in everything if c.created_at >= since]
        return sorted(everything, key=lambda c: c.created_at)

    def list_open_pulls(self, owner, repo):
        return [pr.model_copy() for pr in self.pulls.values() if pr.number not in self.closed_pulls]

    def get_reviews(self, owner, repo, number):
        return list(self.reviews.get(number, []))

    def create_pull(self, owner, repo, title, body, head, base):
        return self.add_pull(head, title=title)

    def request_reviewers(self, owner, repo, number, reviewers):
        self.pulls[number].requested_reviewers = list(reviewers)

    def list_collaborators(self, owner, repo):
        return list(self.collaborators)

    def merge_pull(self, owner, repo, number, commit_title, merge_method=None):
        if number in self.conflicts:
            raise MergeConflictError(405, "Pull Request is not mergeable")
        self.merged.append(number)
        self.closed_pulls.append(number)

    def close_pull(self, owner, repo, number):
        self.closed_pulls.append(number)

    def delete_branch(self, owner, repo, branch):
        self.deleted_branches.append(branch)

    def get_file_content(self, owner, repo, path):
        return self.files.get(path)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def plan_body():
    return SAMPLE_PLAN_BODY


@pytest.fixture
def clock():
    return Clock()
