"""Plan issues on GitHub: discovery, creation, status and task updates."""

import logging
from typing import List, Optional, Tuple

from ..integrations.github.client import GitHubClient
from ..integrations.github.models import IssueSnapshot
from .plan import (
    Plan,
    PlanDefinition,
    PlanStatus,
    TaskStatus,
    generate_plan_markdown,
    parse_plan,
    update_task_in_plan_body,
)

logger = logging.getLogger(__name__)

PLAN_LABEL = "plan"
FINISHED_LABEL = "finished"


def plan_status_label(status: str) -> str:
    return f"plan:{status}"


class TaskNotFoundError(LookupError):
    """The plan issue does not contain the requested task number."""


class PlanIssueStore:
    """Reads and writes plan issues for one or more repositories.

    Every mutation is a fresh read-modify-write of the issue body so that
    concurrent agents only ever overwrite the lines they actually changed.
    """

    def __init__(self, client: GitHubClient, logger_instance: Optional[logging.Logger] = None):
        self.client = client
        self._log = logger_instance or logger

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def fetch(self, owner: str, repo: str, number: int) -> Tuple[IssueSnapshot, Optional[Plan]]:
        issue = self.client.get_issue(owner, repo, number)
        return issue, parse_plan(issue.body, issue.title)

    def list_open_plans(self, owner: str, repo: str) -> List[Tuple[IssueSnapshot, Plan]]:
        """Open plan-labelled issues that parse as plans, oldest first."""
        plans = []
        for issue in self.client.list_issues(owner, repo, state="open", labels=[PLAN_LABEL]):
            if issue.is_pull_request:
                continue
            plan = parse_plan(issue.body, issue.title)
            if plan is None:
                self._log.debug(f"{owner}/{repo}#{issue.number} is labelled plan but does not parse")
                continue
            plans.append((issue, plan))
        return plans

    def find_plan_with_task(
        self, owner: str, repo: str, task_number: int
    ) -> Optional[Tuple[IssueSnapshot, Plan]]:
        """First open plan containing the task number."""
        for issue, plan in self.list_open_plans(owner, repo):
            if plan.get_task(task_number) is not None:
                return issue, plan
        return None

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def create_plan(self, owner: str, repo: str, definition: PlanDefinition) -> IssueSnapshot:
        body = generate_plan_markdown(definition)
        issue = self.client.create_issue(
            owner,
            repo,
            title=f"[PLAN] {definition.title}",
            body=body,
            labels=[PLAN_LABEL, plan_status_label(PlanStatus.ACTIVE.value)],
        )
        self._log.info(
            f"Created plan {owner}/{repo}#{issue.number} with {len(definition.tasks)} tasks"
        )
        return issue

    def update_task(
        self,
        owner: str,
        repo: str,
        plan_number: int,
        task_number: int,
        **changes,
    ) -> Plan:
        """Patch one task's status/assignee lines and write the body back.

        Accepts `status=` and/or `assignee=` keyword arguments. Returns the
        plan as written.
        """
        issue, plan = self.fetch(owner, repo, plan_number)
        if plan is None or plan.get_task(task_number) is None:
            raise TaskNotFoundError(f"Task {task_number} not found in {owner}/{repo}#{plan_number}")
        body = update_task_in_plan_body(issue.body, task_number, **changes)
        if body != issue.body:
            self.client.update_issue_body(owner, repo, plan_number, body)
        return parse_plan(body, issue.title)

    def update_plan_status(self, owner: str, repo: str, plan_number: int, status: str) -> None:
        self.client.set_labels(owner, repo, plan_number, [PLAN_LABEL, plan_status_label(status)])

    def close_plan(
        self, owner: str, repo: str, plan_number: int, status: str = PlanStatus.COMPLETE.value
    ) -> None:
        self.client.close_issue(
            owner, repo, plan_number, labels=[PLAN_LABEL, plan_status_label(status)]
        )
        self._log.info(f"Closed plan {owner}/{repo}#{plan_number} as {status}")

    def reset_task(self, owner: str, repo: str, plan_number: int, task_number: int) -> Plan:
        """Return a task to pending with no assignee."""
        return self.update_task(
            owner, repo, plan_number, task_number,
            status=TaskStatus.PENDING.value, assignee=None,
        )

    def comment(self, owner: str, repo: str, number: int, body: str) -> None:
        self.client.create_comment(owner, repo, number, body)

    def supersede_plan(self, owner: str, repo: str, plan_number: int, superseded_by: int) -> None:
        self.client.create_comment(
            owner, repo, plan_number,
            f"Superseded by #{superseded_by} — consolidated during plan synthesis.",
        )
        self.close_plan(owner, repo, plan_number, status="superseded")

    def handle_plan_complete(self, owner: str, repo: str, plan_number: int, plan: Plan) -> None:
        self.client.create_comment(
            owner, repo, plan_number,
            f"✅ All {len(plan.tasks)} tasks completed. Closing plan.",
        )
        self.close_plan(owner, repo, plan_number)
