"""Task PR lifecycle: review tracking, merge-gated completion and recovery.

A task is only completed once its PR merges. PRs that can never merge
(conflict, persistent rejection, nobody reviewing) are closed after a bounded
wait and their task goes back to the pool:

  A. merge conflict        -> recover immediately
  B. rejected, no approval -> recover after rejected_pr_timeout
  C. no reviews at all     -> recover after unreviewed_pr_timeout
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..integrations.github.client import GitHubClient
from ..integrations.github.errors import GitHubAPIError, MergeConflictError
from ..integrations.github.models import PullRequestSnapshot, ReviewSnapshot
from .plan import TaskStatus, task_number_from_branch
from .plan_issues import PlanIssueStore

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = frozenset({"main", "master"})
TRIVIAL_FEEDBACK = frozenset({"lgtm", "lgtm!", "looks good"})
_IGNORED_REVIEW_STATES = frozenset({"COMMENTED", "PENDING"})


# ---------------------------------------------------------------------------
# Review evaluation
# ---------------------------------------------------------------------------

class ReviewState(str, Enum):
    APPROVED = "approved"
    STUCK_REJECTED = "stuck_rejected"
    STUCK_UNREVIEWED = "stuck_unreviewed"
    WAITING = "waiting"


class RecoveryReason(str, Enum):
    MERGE_CONFLICT = "merge_conflict"
    STUCK_REJECTED = "stuck_rejected"
    STUCK_UNREVIEWED = "stuck_unreviewed"


@dataclass
class ReviewSummary:
    approvals: int = 0
    rejections: int = 0
    pending: int = 0
    latest: Dict[str, str] = field(default_factory=dict)  # user -> latest state

    @property
    def reviewed(self) -> int:
        return len(self.latest)

    @property
    def approved(self) -> bool:
        return self.pending == 0 and self.approvals > 0 and self.approvals == self.reviewed


def summarize_reviews(reviews: List[ReviewSnapshot], requested_reviewers: List[str]) -> ReviewSummary:
    """Collapse a review history to each reviewer's latest verdict."""
    ordered = sorted(
        (r for r in reviews if r.user and r.state.upper() not in _IGNORED_REVIEW_STATES),
        key=lambda r: r.submitted_at or datetime.min.replace(tzinfo=timezone.utc),
    )
    summary = ReviewSummary(pending=len(requested_reviewers))
    for review in ordered:
        summary.latest[review.user] = review.state.upper()
    for state in summary.latest.values():
        if state == "APPROVED":
            summary.approvals += 1
        elif state == "CHANGES_REQUESTED":
            summary.rejections += 1
    return summary


def classify_pull_request(
    summary: ReviewSummary,
    age_seconds: float,
    rejected_timeout: float = 3600,
    unreviewed_timeout: float = 7200,
) -> ReviewState:
    if summary.approved:
        return ReviewState.APPROVED
    if (
        summary.rejections > 0
        and summary.approvals == 0
        and summary.pending == 0
        and age_seconds > rejected_timeout
    ):
        return ReviewState.STUCK_REJECTED
    if summary.reviewed == 0 and summary.pending > 0 and age_seconds > unreviewed_timeout:
        return ReviewState.STUCK_UNREVIEWED
    return ReviewState.WAITING


def extract_feedback(reviews: List[ReviewSnapshot]) -> List[ReviewSnapshot]:
    """Reviews whose body says more than a bare approval phrase."""
    return [
        r for r in reviews
        if r.body and r.body.strip() and r.body.strip().lower() not in TRIVIAL_FEEDBACK
    ]


def format_feedback_issue(pr: PullRequestSnapshot, feedback: List[ReviewSnapshot]) -> str:
    sections = [
        f"Reviewers left feedback on #{pr.number} ({pr.title}) that was not addressed before merge.",
    ]
    for review in feedback:
        quoted = "\n".join(f"> {line}" for line in review.body.strip().splitlines())
        sections.append(f"### Feedback from @{review.user}\n{quoted}")
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class RecoveryResult:
    pr_number: int
    reason: RecoveryReason
    task_number: Optional[int] = None
    plan_number: Optional[int] = None


@dataclass
class MergeOutcome:
    pr_number: int
    merged: bool
    task_number: Optional[int] = None
    follow_up_issue: Optional[int] = None
    plan_completed: bool = False
    recovery: Optional[RecoveryResult] = None


@dataclass
class PRPollResult:
    pr: PullRequestSnapshot
    state: ReviewState
    summary: ReviewSummary
    merge: Optional[MergeOutcome] = None
    recovery: Optional[RecoveryResult] = None


_RECOVERY_PR_COMMENTS = {
    RecoveryReason.MERGE_CONFLICT: (
        "Closing: this PR conflicts with the base branch. The task goes back to "
        "the pool and will be redone from a fresh base."
    ),
    RecoveryReason.STUCK_REJECTED: (
        "Closing: changes were requested with no approvals past the review timeout. "
        "The task goes back to the pool."
    ),
    RecoveryReason.STUCK_UNREVIEWED: (
        "Closing: no reviews arrived before the review timeout. "
        "The task goes back to the pool."
    ),
}


# ---------------------------------------------------------------------------
# PRLifecycleManager
# ---------------------------------------------------------------------------

class PRLifecycleManager:
    """Polls task PRs for one agent, merging its own and recovering stuck ones.

    Only the PR author merges. Timeout recoveries may be applied by any agent
    to task PRs opened by itself or a known peer, so a crashed author cannot
    pin a task forever.
    """

    def __init__(
        self,
        client: GitHubClient,
        store: PlanIssueStore,
        agent_login: str,
        peers: Optional[List[str]] = None,
        merge_strategy: str = "squash",
        base_branch: str = "main",
        rejected_pr_timeout: float = 3600,
        unreviewed_pr_timeout: float = 7200,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.store = store
        self.agent_login = agent_login
        self.peers = set(peers or [])
        self.merge_strategy = merge_strategy
        self.base_branch = base_branch
        self.rejected_pr_timeout = rejected_pr_timeout
        self.unreviewed_pr_timeout = unreviewed_pr_timeout
        self._now = now
        self._log = logger_instance or logger

    def _age_seconds(self, pr: PullRequestSnapshot) -> float:
        if pr.created_at is None:
            return 0.0
        return (self._now() - pr.created_at).total_seconds()

    def process_workspace(self, owner: str, repo: str) -> List[PRPollResult]:
        results = []
        for pr in self.client.list_open_pulls(owner, repo):
            if pr.draft:
                continue
            is_mine = pr.author == self.agent_login
            is_peer_task = pr.author in self.peers and task_number_from_branch(pr.head_ref) is not None
            if not (is_mine or is_peer_task):
                continue
            try:
                results.append(self._process_pull(owner, repo, pr, is_mine))
            except GitHubAPIError as e:
                self._log.error(f"PR lifecycle failed for {owner}/{repo}#{pr.number}: {e}")
        return results

    def _process_pull(
        self, owner: str, repo: str, pr: PullRequestSnapshot, is_mine: bool
    ) -> PRPollResult:
        reviews = self.client.get_reviews(owner, repo, pr.number)
        summary = summarize_reviews(reviews, pr.requested_reviewers)
        state = classify_pull_request(
            summary, self._age_seconds(pr), self.rejected_pr_timeout, self.unreviewed_pr_timeout
        )
        result = PRPollResult(pr=pr, state=state, summary=summary)

        if state == ReviewState.APPROVED:
            if is_mine:
                result.merge = self.merge_pull_request(owner, repo, pr, reviews)
                result.recovery = result.merge.recovery
        elif state == ReviewState.STUCK_REJECTED:
            result.recovery = self.recover(owner, repo, pr, RecoveryReason.STUCK_REJECTED)
        elif state == ReviewState.STUCK_UNREVIEWED:
            result.recovery = self.recover(owner, repo, pr, RecoveryReason.STUCK_UNREVIEWED)
        else:
            self._log.debug(
                f"{owner}/{repo}#{pr.number} waiting: {summary.approvals} approved, "
                f"{summary.rejections} rejected, {summary.pending} pending"
            )
        return result

    # ------------------------------------------------------------------
    # Merge path
    # ------------------------------------------------------------------

    def merge_pull_request(
        self,
        owner: str,
        repo: str,
        pr: PullRequestSnapshot,
        reviews: Optional[List[ReviewSnapshot]] = None,
    ) -> MergeOutcome:
        task_number = task_number_from_branch(pr.head_ref)
        outcome = MergeOutcome(pr_number=pr.number, merged=False, task_number=task_number)
        try:
            self.client.merge_pull(
                owner, repo, pr.number,
                commit_title=f"{pr.title} (#{pr.number})",
                merge_method=self.merge_strategy,
            )
        except MergeConflictError as e:
            self._log.warning(f"{owner}/{repo}#{pr.number} has merge conflicts: {e.message}")
            outcome.recovery = self.recover(owner, repo, pr, RecoveryReason.MERGE_CONFLICT)
            return outcome

        outcome.merged = True
        self._log.info(f"Merged {owner}/{repo}#{pr.number} ({pr.head_ref})")
        self._delete_branch(owner, repo, pr.head_ref)

        feedback = extract_feedback(reviews or [])
        if feedback:
            issue = self.client.create_issue(
                owner, repo,
                title=f"Follow-up: reviewer feedback from #{pr.number}",
                body=format_feedback_issue(pr, feedback),
            )
            outcome.follow_up_issue = issue.number

        if task_number is not None:
            outcome.plan_completed = self.complete_task_after_merge(owner, repo, task_number)
        return outcome

    def complete_task_after_merge(self, owner: str, repo: str, task_number: int) -> bool:
        """Mark the task completed; close the plan when it was the last one. Returns plan completion."""
        found = self.store.find_plan_with_task(owner, repo, task_number)
        if found is None:
            self._log.warning(f"No open plan in {owner}/{repo} contains Task {task_number}")
            return False
        issue, _ = found

        self.store.update_task(
            owner, repo, issue.number, task_number,
            status=TaskStatus.COMPLETED.value, assignee=None,
        )
        self.client.remove_assignee(owner, repo, issue.number, self.agent_login)

        _, plan = self.store.fetch(owner, repo, issue.number)
        if plan is not None and plan.is_complete:
            self.store.handle_plan_complete(owner, repo, issue.number, plan)
            return True
        return False

    # ------------------------------------------------------------------
    # Recovery path
    # ------------------------------------------------------------------

    def _delete_branch(self, owner: str, repo: str, branch: str) -> None:
        if not branch or branch in PROTECTED_BRANCHES or branch == self.base_branch:
            return
        self.client.delete_branch(owner, repo, branch)

    def recover(
        self, owner: str, repo: str, pr: PullRequestSnapshot, reason: RecoveryReason
    ) -> RecoveryResult:
        """Close the PR, delete its branch and return its task to pending."""
        task_number = task_number_from_branch(pr.head_ref)
        result = RecoveryResult(pr_number=pr.number, reason=reason, task_number=task_number)

        self.client.create_comment(owner, repo, pr.number, _RECOVERY_PR_COMMENTS[reason])
        self.client.close_pull(owner, repo, pr.number)
        self._delete_branch(owner, repo, pr.head_ref)
        self._log.warning(f"Recovered {owner}/{repo}#{pr.number} ({reason.value})")

        if task_number is None:
            return result

        found = self.store.find_plan_with_task(owner, repo, task_number)
        if found is None:
            return result
        issue, _ = found
        result.plan_number = issue.number
        self.store.reset_task(owner, repo, issue.number, task_number)
        self.store.comment(
            owner, repo, issue.number,
            f"♻️ Task {task_number} reset to pending: PR #{pr.number} closed ({reason.value.replace('_', ' ')}).",
        )
        return result
