"""Optimistic task claiming on a shared plan issue.

There is no lock on the issue body: an agent writes its name into the task,
waits for the write to settle, and re-reads. Whoever the body names after the
consensus window owns the task; everyone else backs off without writing.
"""

import logging
import time
from typing import Callable, Optional

from pydantic import BaseModel

from ..integrations.github.client import GitHubClient
from ..integrations.github.errors import GitHubAPIError
from ..utils.error_handling import log_and_ignore
from .plan import PlanStatus, TaskStatus, is_claimable
from .plan_issues import PLAN_LABEL, PlanIssueStore, plan_status_label

logger = logging.getLogger(__name__)


class ClaimResult(BaseModel):
    claimed: bool
    task_number: int
    claimed_by: Optional[str] = None
    reason: str = ""
    already_mine: bool = False


class TaskClaimer:
    """Claims tasks for one agent and reports on their progress."""

    def __init__(
        self,
        client: GitHubClient,
        store: PlanIssueStore,
        agent_login: str,
        consensus_delay: float = 5.0,
        propagation_extension: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.store = store
        self.agent_login = agent_login
        self.consensus_delay = consensus_delay
        self.propagation_extension = propagation_extension
        self._sleep = sleep
        self._log = logger_instance or logger

    def claim_task(self, owner: str, repo: str, plan_number: int, task_number: int) -> ClaimResult:
        issue, plan = self.store.fetch(owner, repo, plan_number)
        task = plan.get_task(task_number) if plan else None
        if task is None:
            return ClaimResult(claimed=False, task_number=task_number, reason="task not found")

        if task.assignee == self.agent_login and task.status in (
            TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS
        ):
            self._log.debug(f"Task {task_number} on #{plan_number} already claimed by us")
            return ClaimResult(
                claimed=True, task_number=task_number, claimed_by=self.agent_login,
                reason="already claimed by this agent", already_mine=True,
            )

        if not is_claimable(task, plan):
            return ClaimResult(
                claimed=False, task_number=task_number, claimed_by=task.assignee,
                reason=f"not claimable (status={TaskStatus(task.status).value})",
            )

        self.store.update_task(
            owner, repo, plan_number, task_number,
            status=TaskStatus.CLAIMED.value, assignee=self.agent_login,
        )
        try:
            self.client.add_assignee(owner, repo, plan_number, self.agent_login)
        except GitHubAPIError as e:
            # Issue assignees are only a hint for humans; the body is authoritative
            log_and_ignore(e, f"Could not add issue assignee on #{plan_number}",
                           logger_instance=self._log, level=logging.DEBUG)

        self._sleep(self.consensus_delay)
        owner_now = self._current_owner(owner, repo, plan_number, task_number)
        if owner_now is None:
            self._log.info(
                f"Claim on task {task_number} not visible yet, waiting {self.propagation_extension}s more"
            )
            self._sleep(self.propagation_extension)
            owner_now = self._current_owner(owner, repo, plan_number, task_number)

        if owner_now != self.agent_login:
            self._log.info(
                f"Lost claim race for task {task_number} on {owner}/{repo}#{plan_number} "
                f"(now {owner_now or 'unassigned'})"
            )
            return ClaimResult(
                claimed=False, task_number=task_number, claimed_by=owner_now,
                reason="claimed by another agent" if owner_now else "claim not persisted",
            )

        self._post_claim_comment(owner, repo, plan_number, task_number, task.title)
        self._log.info(f"Claimed task {task_number} on {owner}/{repo}#{plan_number}")
        return ClaimResult(claimed=True, task_number=task_number, claimed_by=self.agent_login)

    def _current_owner(self, owner: str, repo: str, plan_number: int, task_number: int) -> Optional[str]:
        """Who holds the task now. An assignee on a task that is not claimed or in progress holds nothing."""
        _, plan = self.store.fetch(owner, repo, plan_number)
        task = plan.get_task(task_number) if plan else None
        if task is None or task.status not in (TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS):
            return None
        return task.assignee

    def _post_claim_comment(
        self, owner: str, repo: str, plan_number: int, task_number: int, title: str
    ) -> None:
        marker = f"Task {task_number}"
        for comment in self.client.list_comments(owner, repo, plan_number):
            if (
                comment.author == self.agent_login
                and marker in comment.body
                and "claim" in comment.body.lower()
            ):
                return
        self.client.create_comment(
            owner, repo, plan_number, f"🔒 Claiming Task {task_number}: {title}"
        )

    # ------------------------------------------------------------------
    # Progress reporting
    # ------------------------------------------------------------------

    def mark_in_progress(self, owner: str, repo: str, plan_number: int, task_number: int) -> None:
        self.store.update_task(
            owner, repo, plan_number, task_number,
            status=TaskStatus.IN_PROGRESS.value, assignee=self.agent_login,
        )

    def report_task_published(
        self, owner: str, repo: str, plan_number: int, task_number: int, pr_url: str
    ) -> None:
        """The task stays in progress until its PR merges."""
        self.client.create_comment(
            owner, repo, plan_number,
            f"📬 Task {task_number} published for review: {pr_url}",
        )

    def report_task_failed(
        self,
        owner: str,
        repo: str,
        plan_number: int,
        task_number: int,
        error: str,
        reset: bool = False,
    ) -> None:
        """Record a failed attempt. With reset=True the task goes back to the pool."""
        if reset:
            self.store.reset_task(owner, repo, plan_number, task_number)
            self.client.remove_assignee(owner, repo, plan_number, self.agent_login)
        suffix = " Returned to the pool." if reset else ""
        self.client.create_comment(
            owner, repo, plan_number, f"⚠️ Task {task_number} failed: {error}{suffix}"
        )
        self._log.warning(f"Task {task_number} on {owner}/{repo}#{plan_number} failed: {error}")

    def report_task_blocked(
        self, owner: str, repo: str, plan_number: int, task_number: int, reason: str
    ) -> None:
        self.store.update_task(owner, repo, plan_number, task_number, status=TaskStatus.BLOCKED.value)
        self.client.set_labels(
            owner, repo, plan_number, [PLAN_LABEL, plan_status_label(PlanStatus.BLOCKED.value)]
        )
        self.client.create_comment(
            owner, repo, plan_number, f"🚧 Task {task_number} is blocked: {reason}"
        )
        self.client.remove_assignee(owner, repo, plan_number, self.agent_login)
        self._log.warning(f"Task {task_number} on {owner}/{repo}#{plan_number} blocked: {reason}")
