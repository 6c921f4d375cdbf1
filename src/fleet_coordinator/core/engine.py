"""The coordination cycle: one pass over every watched workspace.

Per workspace, in order:
  1. finished sentinel check (a finished workspace stops here)
  2. plan poll
  3. stuck-task recovery
  4. PR lifecycle (merge / recover)
  5. plan synthesis when idle
  6. housekeeping
  7. claim and execute one task

Each workspace is isolated: an error in one is logged and recorded in the
cycle report, and the cycle moves on to the next.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..integrations.github.client import GitHubClient
from ..integrations.github.errors import GitHubAPIError
from ..queue.action_queue import ActionQueue, ActionTarget
from ..queue.commitment_queue import Commitment, CommitmentQueue, CommitmentType
from ..safeguards.retry_handler import RetryHandler
from ..utils.error_handling import ErrorContext
from .claim import TaskClaimer
from .config import FleetConfig
from .executor import CommandTaskExecutor, TaskExecutor
from .lifecycle import (
    ClaimableTask,
    HousekeepingResult,
    PlanPollSummary,
    WorkspaceLifecycleController,
    WorkspaceState,
)
from .plan import PlanDefinition
from .plan_issues import PlanIssueStore
from .pr_lifecycle import PRLifecycleManager, PRPollResult
from .task_runner import TaskRunner, TaskRunOutcome
from .workspace import WorkspaceRecord, WorkspaceRegistry

logger = logging.getLogger(__name__)

_TARGET_URI_RE = re.compile(r"^([^/\s]+)/([^#\s]+)#(\d+)$")


def parse_target_uri(uri: str) -> Tuple[str, str, int]:
    """Split an `owner/repo#number` target."""
    match = _TARGET_URI_RE.match(uri)
    if not match:
        raise ValueError(f"Not an issue target: {uri}")
    return match.group(1), match.group(2), int(match.group(3))


@dataclass
class WorkspaceCycleResult:
    key: str
    state: WorkspaceState = WorkspaceState.ACTIVE
    plans: Optional[PlanPollSummary] = None
    stuck_reset: List[Tuple[int, int]] = field(default_factory=list)
    pull_requests: List[PRPollResult] = field(default_factory=list)
    synthesized_plan: Optional[int] = None
    housekeeping: Optional[HousekeepingResult] = None
    task: Optional[TaskRunOutcome] = None


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    workspaces: List[WorkspaceCycleResult] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    actions_sent: int = 0
    actions_deferred: int = 0
    commitments_completed: int = 0
    commitments_failed: int = 0


class CoordinationEngine:
    def __init__(
        self,
        client: GitHubClient,
        registry: WorkspaceRegistry,
        store: PlanIssueStore,
        claimer: TaskClaimer,
        pr_manager: PRLifecycleManager,
        lifecycle: WorkspaceLifecycleController,
        action_queue: ActionQueue,
        commitment_queue: CommitmentQueue,
        runner: Optional[TaskRunner] = None,
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.registry = registry
        self.store = store
        self.claimer = claimer
        self.pr_manager = pr_manager
        self.lifecycle = lifecycle
        self.action_queue = action_queue
        self.commitment_queue = commitment_queue
        self.runner = runner
        self._log = logger_instance or logger

    @classmethod
    def from_config(
        cls,
        config: FleetConfig,
        client: Optional[GitHubClient] = None,
        executor: Optional[TaskExecutor] = None,
        logger_instance: Optional[logging.Logger] = None,
    ) -> "CoordinationEngine":
        client = client or GitHubClient(config.github)
        agent = client.username
        coordination = config.coordination
        queues = config.queues

        registry = WorkspaceRegistry(config.state_dir)
        store = PlanIssueStore(client)
        claimer = TaskClaimer(
            client, store, agent,
            consensus_delay=coordination.claim_consensus_delay,
            propagation_extension=coordination.claim_propagation_extension,
        )
        pr_manager = PRLifecycleManager(
            client, store, agent,
            peers=coordination.peers,
            merge_strategy=config.github.merge_strategy,
            base_branch=config.github.base_branch,
            rejected_pr_timeout=coordination.rejected_pr_timeout,
            unreviewed_pr_timeout=coordination.unreviewed_pr_timeout,
        )
        lifecycle = WorkspaceLifecycleController(client, store, registry, agent, coordination)

        if executor is None and config.executor.command:
            executor = CommandTaskExecutor(config.executor.command, timeout=config.executor.timeout)
        runner = None
        if executor is not None:
            runner = TaskRunner(
                client, claimer, executor,
                checkout_dir=config.checkout_dir,
                base_branch=config.github.base_branch,
                test_timeout=coordination.test_timeout,
                token=config.github.token,
            )

        action_queue = ActionQueue(
            config.state_dir,
            retry_handler=RetryHandler(
                initial_backoff=queues.action_base_backoff,
                max_backoff=queues.action_max_backoff,
                jitter=queues.action_jitter,
                max_attempts=queues.action_max_attempts,
            ),
            retention_days=queues.retention_days,
        )
        commitment_queue = CommitmentQueue(
            config.state_dir,
            max_attempts=queues.commitment_max_attempts,
            stale_after=queues.commitment_stale_after,
            in_progress_timeout=queues.commitment_in_progress_timeout,
            retention_days=queues.retention_days,
        )
        return cls(
            client, registry, store, claimer, pr_manager, lifecycle,
            action_queue, commitment_queue, runner=runner, logger_instance=logger_instance,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        report = CycleReport(started_at=datetime.now(timezone.utc))

        with ErrorContext("commitment sweep", raise_on_error=False, logger_instance=self._log) as ctx:
            self.fulfill_commitments(report)
        if ctx.error:
            report.errors["commitments"] = str(ctx.error)

        with ErrorContext("action delivery", raise_on_error=False, logger_instance=self._log) as ctx:
            self.deliver_actions(report)
        if ctx.error:
            report.errors["actions"] = str(ctx.error)

        for record in self.registry.list():
            if hasattr(self._log, "set_context"):
                self._log.set_context(workspace=record.key)
            with ErrorContext(
                f"cycle for {record.key}", raise_on_error=False, logger_instance=self._log
            ) as ctx:
                report.workspaces.append(self.run_workspace(record))
            if ctx.error:
                report.errors[record.key] = str(ctx.error)
        if hasattr(self._log, "clear_context"):
            self._log.clear_context()

        report.finished_at = datetime.now(timezone.utc)
        self._log.info(
            f"Cycle done: {len(report.workspaces)} workspaces, {len(report.errors)} errors, "
            f"{report.actions_sent} actions sent, {report.commitments_completed} commitments fulfilled"
        )
        return report

    def run_workspace(self, record: WorkspaceRecord) -> WorkspaceCycleResult:
        result = WorkspaceCycleResult(key=record.key)

        if record.is_finished and self.lifecycle.verify_finished_sentinel(record):
            result.state = WorkspaceState.FINISHED
            return result

        result.plans, claimable = self.lifecycle.poll_plans(record)
        result.stuck_reset = self.lifecycle.recover_stuck_tasks(record)
        result.pull_requests = self.pr_manager.process_workspace(record.owner, record.repo)
        result.state = self.lifecycle.get_state(record)
        result.synthesized_plan = self.lifecycle.synthesize_plan(record)
        result.housekeeping = self.lifecycle.run_housekeeping(record)
        if record.is_finished:
            result.state = WorkspaceState.FINISHED
        elif result.synthesized_plan:
            result.state = WorkspaceState.ACTIVE

        if self.runner is not None and claimable and result.state == WorkspaceState.ACTIVE:
            result.task = self.claim_and_execute(record, claimable)
        return result

    def claim_and_execute(
        self, record: WorkspaceRecord, claimable: List[ClaimableTask]
    ) -> Optional[TaskRunOutcome]:
        """Claim the first task we can win and run it."""
        for candidate in claimable:
            claim = self.claimer.claim_task(
                record.owner, record.repo, candidate.plan_number, candidate.task.number
            )
            if not claim.claimed:
                self._log.info(
                    f"Task {candidate.task.number} not claimed ({claim.reason}), trying next"
                )
                continue
            if hasattr(self._log, "set_context"):
                self._log.set_context(task_number=candidate.task.number)
            return self.runner.run(record.owner, record.repo, candidate.plan_number, candidate.task)
        return None

    # ------------------------------------------------------------------
    # Durable queues
    # ------------------------------------------------------------------

    def deliver_actions(self, report: Optional[CycleReport] = None) -> int:
        sent = 0
        for action in self.action_queue.get_retryable():
            try:
                owner, repo, number = parse_target_uri(action.target.uri)
            except ValueError as e:
                self.action_queue.abandon(action.id, str(e))
                continue
            try:
                self.client.create_comment(owner, repo, number, action.text)
            except GitHubAPIError as e:
                self.action_queue.defer(action.id, str(e))
                if report is not None:
                    report.actions_deferred += 1
                continue
            self.action_queue.mark_sent(action.id)
            sent += 1
        if report is not None:
            report.actions_sent += sent
        return sent

    def fulfill_commitments(self, report: Optional[CycleReport] = None) -> int:
        self.commitment_queue.abandon_stale()
        self.commitment_queue.reset_stuck_in_progress()
        completed = 0
        for commitment in self.commitment_queue.get_pending():
            self.commitment_queue.mark_in_progress(commitment.id)
            try:
                result = self._fulfill(commitment)
            except (GitHubAPIError, KeyError, TypeError, ValueError) as e:
                self.commitment_queue.mark_failed(commitment.id, str(e))
                if report is not None:
                    report.commitments_failed += 1
                continue
            self.commitment_queue.mark_completed(commitment.id, result)
            completed += 1
        if report is not None:
            report.commitments_completed += completed
        return completed

    def _fulfill(self, commitment: Commitment) -> dict:
        params = commitment.params
        kind = CommitmentType(commitment.type)
        if kind == CommitmentType.CREATE_ISSUE:
            issue = self.client.create_issue(
                params["owner"], params["repo"],
                title=params["title"], body=params.get("body", ""), labels=params.get("labels"),
            )
            return {"issue_number": issue.number}
        if kind == CommitmentType.CREATE_PLAN:
            definition = PlanDefinition.model_validate(params["plan"])
            issue = self.store.create_plan(params["owner"], params["repo"], definition)
            return {"plan_number": issue.number}
        target = f"{params['owner']}/{params['repo']}#{int(params['issue_number'])}"
        action = self.action_queue.enqueue(
            ActionTarget(uri=target, root_uri=commitment.source_thread_uri), params["body"]
        )
        return {"action_id": action.id}

    def run_forever(
        self,
        interval: float,
        max_cycles: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """Run cycles until max_cycles (or forever). Returns the number of cycles run."""
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            sleep(interval)
        return cycles
