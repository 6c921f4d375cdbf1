"""Workspace lifecycle: active ⇄ finished.

A workspace is *active* while it has open issues or plans. When there is
nothing left, a "finished" sentinel issue makes that state visible; it is the
creator's job to re-open the workspace when someone asks for more work on the
sentinel or elsewhere in the repository. A workspace must never be left with
no open issues, no active plan and no sentinel at the same time.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..integrations.github.client import GitHubClient
from ..integrations.github.errors import GitHubAPIError
from ..integrations.github.models import CommentSnapshot, IssueSnapshot
from .config import CoordinationConfig
from .plan import (
    PlanTask,
    TaskStatus,
    are_dependencies_met,
    get_claimable_tasks,
    task_number_from_branch,
)
from .plan_issues import FINISHED_LABEL, PLAN_LABEL, PlanIssueStore
from .synthesis import (
    ChecklistHealthAssessor,
    HealthAssessor,
    PlanSynthesizer,
    RollupPlanSynthesizer,
)
from .workspace import WorkspaceRecord, WorkspaceRegistry

logger = logging.getLogger(__name__)

DISCUSSION_LABEL = "discussion"
MEMO_LABEL = "memo"
MAX_AGREEMENT_LENGTH = 120

AGREEMENT_PHRASES = frozenset({
    "agreed", "agree", "yes", "yep", "yeah", "confirmed", "looks good", "lgtm",
    "+1", "👍", "all done", "done", "complete", "completed", "finished",
    "looks complete", "looks finished", "ship it", "sounds good", "all good",
    "nothing else", "no more work", "no additional work", "looks great",
    "nice work", "well done", "good job", "all set",
})
_TRAILING_PUNCTUATION_RE = re.compile(r"[.!?]+$")

_HOUSEKEEPING_SKIP_LABELS = frozenset({PLAN_LABEL, DISCUSSION_LABEL, FINISHED_LABEL})


def is_agreement_comment(text: str) -> bool:
    """True for short comments that only agree the work is done."""
    normalized = (text or "").strip().lower()
    if not normalized or len(normalized) > MAX_AGREEMENT_LENGTH:
        return False
    normalized = _TRAILING_PUNCTUATION_RE.sub("", normalized).strip()
    return normalized in AGREEMENT_PHRASES


class WorkspaceState(str, Enum):
    ACTIVE = "active"
    NEEDS_SYNTHESIS = "needs-synthesis"
    FINISHED = "finished"


def workspace_state(
    record: WorkspaceRecord, synthesis_cooldown: float, now: datetime
) -> WorkspaceState:
    """Lifecycle state from registry fields alone (no API calls)."""
    if record.is_finished:
        return WorkspaceState.FINISHED
    if record.active_plan_issues or record.last_polled is None:
        return WorkspaceState.ACTIVE
    last_attempt = record.last_plan_synthesis_attempt
    if last_attempt is None or (now - last_attempt).total_seconds() >= synthesis_cooldown:
        return WorkspaceState.NEEDS_SYNTHESIS
    return WorkspaceState.ACTIVE


@dataclass
class PlanPollSummary:
    plans: int = 0
    tasks_by_status: Dict[str, int] = field(default_factory=dict)
    claimable: int = 0
    pending_blocked_by_deps: int = 0
    pending_has_assignee: int = 0


@dataclass
class ClaimableTask:
    plan_number: int
    task: PlanTask


@dataclass
class HousekeepingResult:
    stale_closed: List[int] = field(default_factory=list)
    handled_closed: List[int] = field(default_factory=list)


def _labels_lower(issue: IssueSnapshot) -> set:
    return {label.lower() for label in issue.labels}


class WorkspaceLifecycleController:
    """Per-agent view of every watched workspace's lifecycle."""

    def __init__(
        self,
        client: GitHubClient,
        store: PlanIssueStore,
        registry: WorkspaceRegistry,
        agent_login: str,
        config: Optional[CoordinationConfig] = None,
        synthesizer: Optional[PlanSynthesizer] = None,
        assessor: Optional[HealthAssessor] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.store = store
        self.registry = registry
        self.agent_login = agent_login
        self.config = config or CoordinationConfig()
        self.synthesizer = synthesizer or RollupPlanSynthesizer()
        self.assessor = assessor or ChecklistHealthAssessor()
        self._now = now
        self._log = logger_instance or logger

    def _elapsed(self, since: Optional[datetime]) -> Optional[float]:
        if since is None:
            return None
        return (self._now() - since).total_seconds()

    def get_state(self, record: WorkspaceRecord) -> WorkspaceState:
        return workspace_state(record, self.config.plan_synthesis_cooldown, self._now())

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_plans(self, record: WorkspaceRecord) -> Tuple[PlanPollSummary, List[ClaimableTask]]:
        """Refresh active plans for a workspace and list tasks we could claim."""
        plans = self.store.list_open_plans(record.owner, record.repo)
        summary = PlanPollSummary(plans=len(plans))
        claimable: List[ClaimableTask] = []

        for issue, plan in plans:
            for task in plan.tasks:
                status = TaskStatus(task.status).value
                summary.tasks_by_status[status] = summary.tasks_by_status.get(status, 0) + 1
                if status == TaskStatus.PENDING.value:
                    if task.assignee:
                        summary.pending_has_assignee += 1
                    elif not are_dependencies_met(task, plan):
                        summary.pending_blocked_by_deps += 1
            for task in get_claimable_tasks(plan):
                claimable.append(ClaimableTask(plan_number=issue.number, task=task))

        summary.claimable = len(claimable)
        record.active_plan_issues = [issue.number for issue, _ in plans]
        record.last_polled = self._now()
        self.registry.update(record)

        self._log.info(
            f"{record.key}: {summary.plans} plans, {summary.claimable} claimable, "
            f"{summary.pending_blocked_by_deps} waiting on deps, "
            f"{summary.pending_has_assignee} pending with assignee"
        )
        return summary, claimable

    def poll_open_issues(self, record: WorkspaceRecord) -> List[IssueSnapshot]:
        """Open work items: not pull requests, plans or sentinels."""
        issues = self.client.list_issues(record.owner, record.repo, state="open")
        return [
            i for i in issues
            if not i.is_pull_request and not (_labels_lower(i) & {PLAN_LABEL, FINISHED_LABEL})
        ]

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def is_synthesis_eligible(self, record: WorkspaceRecord) -> bool:
        return self.get_state(record) == WorkspaceState.NEEDS_SYNTHESIS

    def is_health_check_due(self, record: WorkspaceRecord) -> bool:
        elapsed = self._elapsed(record.last_health_check_attempt)
        return elapsed is None or elapsed >= self.config.health_check_cooldown

    def synthesize_plan(self, record: WorkspaceRecord) -> Optional[int]:
        """Roll open issues into a new plan. Returns the plan issue number, if one was created."""
        if not self.is_synthesis_eligible(record):
            return None
        owner, repo = record.owner, record.repo
        try:
            issues = self.poll_open_issues(record)
            if not issues:
                if self.is_health_check_due(record):
                    self.run_health_check(record)
                else:
                    self.create_finished_sentinel(record, "no open issues or plans remain")
                return None

            existing = self.store.list_open_plans(owner, repo)
            if existing:
                self._log.info(f"{record.key}: plan appeared during synthesis, skipping")
                record.active_plan_issues = [issue.number for issue, _ in existing]
                return None

            result = self.synthesizer.synthesize(owner, repo, issues)
            if result is None:
                return None

            plan_issue = self.store.create_plan(owner, repo, result.definition)

            # Concurrent synthesis by another agent: the oldest plan wins
            others = [i for i, _ in self.store.list_open_plans(owner, repo) if i.number != plan_issue.number]
            older = [i for i in others if i.number < plan_issue.number]
            if older:
                self.store.supersede_plan(owner, repo, plan_issue.number, older[0].number)
                record.active_plan_issues = [older[0].number]
                return None
            for other in others:
                self.store.supersede_plan(owner, repo, other.number, plan_issue.number)

            for number in result.rolled_up_issues:
                self.client.create_comment(
                    owner, repo, number, f"Rolled into plan #{plan_issue.number} — closing."
                )
                self.client.close_issue(owner, repo, number)

            record.active_plan_issues = [plan_issue.number]
            self._log.info(
                f"{record.key}: synthesized plan #{plan_issue.number} from {len(result.rolled_up_issues)} issues"
            )
            return plan_issue.number
        finally:
            record.last_plan_synthesis_attempt = self._now()
            self.registry.update(record)

    def run_health_check(self, record: WorkspaceRecord) -> List[int]:
        """Look for remaining work in the project docs; finish the workspace if there is none.

        Returns the numbers of any issues created for remaining work.
        """
        owner, repo = record.owner, record.repo
        record.last_health_check_attempt = self._now()
        self.registry.update(record)

        readme = self.client.get_file_content(owner, repo, "README.md")
        agents_md = self.client.get_file_content(owner, repo, "AGENTS.md")
        if readme is None and agents_md is None:
            self.create_finished_sentinel(record, "no README.md or AGENTS.md to assess")
            return []

        assessment = self.assessor.assess(owner, repo, readme, agents_md)
        if not assessment.has_remaining_work or not assessment.new_issues:
            self.create_finished_sentinel(record, assessment.summary)
            return []

        created = []
        for item in assessment.new_issues:
            issue = self.client.create_issue(owner, repo, title=item.title, body=item.description)
            created.append(issue.number)
        self._log.info(f"{record.key}: health check found remaining work, opened {created}")
        return created

    # ------------------------------------------------------------------
    # Finished sentinel
    # ------------------------------------------------------------------

    def create_finished_sentinel(self, record: WorkspaceRecord, summary: str) -> int:
        """Mark the workspace finished, adopting an existing open sentinel if there is one."""
        owner, repo = record.owner, record.repo
        existing = self.client.list_issues(owner, repo, state="open", labels=[FINISHED_LABEL])
        if existing:
            number = existing[0].number
        else:
            issue = self.client.create_issue(
                owner,
                repo,
                title=f"FINISHED: {summary}",
                body=(
                    "All known work in this workspace is complete.\n\n"
                    "Comment here with anything that still needs doing and the workspace "
                    "will resume."
                ),
                labels=[FINISHED_LABEL],
            )
            number = issue.number
            self._log.info(f"{record.key}: workspace finished, sentinel #{number}")
        record.finished_issue_number = number
        record.active_plan_issues = []
        self.registry.update(record)
        return number

    def _clear_finished(self, record: WorkspaceRecord) -> None:
        record.finished_issue_number = None
        self.registry.update(record)

    def _is_agent(self, login: Optional[str]) -> bool:
        return login == self.agent_login or login in self.config.peers

    def find_human_activity(
        self, record: WorkspaceRecord, since: datetime, exclude: int
    ) -> Optional[int]:
        """Issue number of the first human issue or comment after `since`, if any."""
        for issue in self.poll_open_issues(record):
            if issue.number == exclude or self._is_agent(issue.author):
                continue
            if issue.created_at and issue.created_at > since:
                return issue.number
        for comment in self.client.list_repo_comments(record.owner, record.repo, since=since):
            if comment.issue_number == exclude or self._is_agent(comment.author):
                continue
            if comment.created_at is None or comment.created_at > since:
                return comment.issue_number
        return None

    def verify_finished_sentinel(self, record: WorkspaceRecord) -> bool:
        """Re-check a finished workspace. Returns True while it should stay finished."""
        number = record.finished_issue_number
        if number is None:
            return False
        owner, repo = record.owner, record.repo
        try:
            sentinel = self.client.get_issue(owner, repo, number)
            is_creator = sentinel.author == self.agent_login

            if sentinel.state == "closed":
                if is_creator or self.poll_open_issues(record):
                    self._clear_finished(record)
                    return False
                self.client.reopen_issue(owner, repo, number)
                self.client.create_comment(
                    owner, repo, number,
                    "Reopening: this sentinel was closed but there is no open work in the workspace.",
                )
                self._log.warning(f"{record.key}: reopened sentinel #{number}")
                return True

            if not is_creator:
                return True

            feedback = [
                c for c in self.client.list_comments(owner, repo, number)
                if c.author != self.agent_login
            ]
            if not feedback:
                since = sentinel.created_at or self._now()
                activity = self.find_human_activity(record, since, exclude=number)
                if activity is None:
                    return True
                self.client.create_comment(
                    owner, repo, number,
                    f"Human activity detected on #{activity} — closing sentinel to resume workspace.",
                )
                self.client.close_issue(owner, repo, number)
                self._clear_finished(record)
                return False

            work = [c for c in feedback if not is_agreement_comment(c.body)]
            if not work:
                return True
            issue = self.client.create_issue(
                owner, repo,
                title=f"Feedback from #{number}: remaining work identified",
                body=format_sentinel_feedback(work),
            )
            self.client.create_comment(
                owner, repo, number,
                f"Feedback extracted into #{issue.number} — closing sentinel to resume work.",
            )
            self.client.close_issue(owner, repo, number)
            self._clear_finished(record)
            self._log.info(f"{record.key}: sentinel #{number} closed, feedback in #{issue.number}")
            return False
        except GitHubAPIError as e:
            self._log.error(f"{record.key}: sentinel check failed, assuming still finished: {e}")
            return True

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_stale_issues(self, record: WorkspaceRecord) -> List[int]:
        closed = []
        now = self._now()
        for issue in self.client.list_issues(record.owner, record.repo, state="open"):
            labels = _labels_lower(issue)
            if issue.is_pull_request or labels & _HOUSEKEEPING_SKIP_LABELS:
                continue
            days = self.config.stale_memo_days if MEMO_LABEL in labels else self.config.stale_issue_days
            last_activity = issue.updated_at or issue.created_at
            if last_activity is None or now - last_activity < timedelta(days=days):
                continue
            self.client.close_issue(record.owner, record.repo, issue.number)
            closed.append(issue.number)
            self._log.info(
                f"{record.key}: closed stale issue #{issue.number} "
                f"({(now - last_activity).days} days idle)"
            )
        return closed

    def close_handled_issues(self, record: WorkspaceRecord) -> List[int]:
        """Close issues where we replied last and nobody followed up."""
        closed = []
        now = self._now()
        threshold = timedelta(hours=self.config.handled_issue_hours)
        for issue in self.client.list_issues(record.owner, record.repo, state="open"):
            labels = _labels_lower(issue)
            if issue.is_pull_request or labels & _HOUSEKEEPING_SKIP_LABELS:
                continue
            last_activity = issue.updated_at or issue.created_at
            if last_activity is None or now - last_activity < threshold:
                continue
            comments = self.client.list_comments(record.owner, record.repo, issue.number)
            if not comments or comments[-1].author != self.agent_login:
                continue
            self.client.close_issue(record.owner, record.repo, issue.number)
            closed.append(issue.number)
            self._log.info(f"{record.key}: closed handled issue #{issue.number}")
        return closed

    def run_housekeeping(self, record: WorkspaceRecord) -> HousekeepingResult:
        return HousekeepingResult(
            stale_closed=self.cleanup_stale_issues(record),
            handled_closed=self.close_handled_issues(record),
        )

    # ------------------------------------------------------------------
    # Stuck-task recovery
    # ------------------------------------------------------------------

    def recover_stuck_tasks(self, record: WorkspaceRecord) -> List[Tuple[int, int]]:
        """Reset held tasks with no open PR after stuck_task_timeout.

        Any agent may do this; the first-seen timestamp lives in the registry
        so the timeout survives restarts. Returns (plan, task) pairs reset.
        """
        owner, repo = record.owner, record.repo
        open_pr_tasks = {
            task_number_from_branch(pr.head_ref)
            for pr in self.client.list_open_pulls(owner, repo)
        }
        held = {TaskStatus.CLAIMED.value, TaskStatus.IN_PROGRESS.value, TaskStatus.BLOCKED.value}
        now = self._now()
        seen: Dict[str, datetime] = {}
        reset: List[Tuple[int, int]] = []

        for issue, plan in self.store.list_open_plans(owner, repo):
            for task in plan.tasks:
                if TaskStatus(task.status).value not in held or not task.assignee:
                    continue
                if task.number in open_pr_tasks:
                    continue
                key = f"{issue.number}#{task.number}"
                first_seen = record.stuck_tasks.get(key, now)
                if (now - first_seen).total_seconds() < self.config.stuck_task_timeout:
                    seen[key] = first_seen
                    continue
                self.store.reset_task(owner, repo, issue.number, task.number)
                self.client.remove_assignee(owner, repo, issue.number, task.assignee)
                self.client.create_comment(
                    owner, repo, issue.number,
                    f"⏱️ Task {task.number} was held by @{task.assignee} with no open PR for "
                    f"over {self.config.stuck_task_timeout // 60} minutes. Returned to the pool.",
                )
                self._log.warning(f"{record.key}: reset stuck task {task.number} on #{issue.number}")
                reset.append((issue.number, task.number))

        record.stuck_tasks = seen
        self.registry.update(record)
        return reset


def format_sentinel_feedback(comments: List[CommentSnapshot]) -> str:
    return "\n\n---\n\n".join(f"**@{c.author}:**\n{c.body.strip()}" for c in comments)
