"""Tests for optimistic task claiming and task progress reporting."""

import pytest

from fleet_coordinator.core.claim import TaskClaimer
from fleet_coordinator.core.plan import TaskStatus, parse_plan, update_task_in_plan_body
from fleet_coordinator.core.plan_issues import PlanIssueStore

OWNER, REPO = "acme", "widgets"


def _make_claimer(github, sleep=None, **overrides):
    defaults = dict(
        client=github,
        store=PlanIssueStore(github),
        agent_login=github.username,
        consensus_delay=1.0,
        propagation_extension=2.0,
        sleep=sleep or (lambda seconds: None),
    )
    defaults.update(overrides)
    return TaskClaimer(**defaults)


def _task(github, number, task_number):
    issue = github.issues[number]
    return parse_plan(issue.body, issue.title).get_task(task_number)


def _set_task(github, number, task_number, **changes):
    issue = github.issues[number]
    issue.body = update_task_in_plan_body(issue.body, task_number, **changes)


# ===========================================================================
# claim_task
# ===========================================================================

class TestClaimTask:
    def test_successful_claim(self, github):
        plan = github.add_plan()
        sleeps = []
        claimer = _make_claimer(github, sleep=sleeps.append)

        result = claimer.claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is True
        assert result.claimed_by == "agent-a"
        task = _task(github, plan.number, 1)
        assert task.status == TaskStatus.CLAIMED
        assert task.assignee == "agent-a"
        assert github.issues[plan.number].assignees == ["agent-a"]
        assert github.comment_bodies(plan.number) == ["🔒 Claiming Task 1: Add search index"]
        assert sleeps == [1.0]

    def test_reclaiming_own_task_is_noop(self, github):
        plan = github.add_plan()
        _set_task(github, plan.number, 1, status="in_progress", assignee="agent-a")
        sleeps = []

        result = _make_claimer(github, sleep=sleeps.append).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is True
        assert result.already_mine is True
        assert sleeps == []
        assert github.body_updates == 0

    def test_task_held_by_other_agent(self, github):
        plan = github.add_plan()
        _set_task(github, plan.number, 1, status="claimed", assignee="agent-b")

        result = _make_claimer(github).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is False
        assert result.claimed_by == "agent-b"
        assert github.body_updates == 0

    def test_unmet_dependencies_are_not_claimable(self, github):
        plan = github.add_plan()

        result = _make_claimer(github).claim_task(OWNER, REPO, plan.number, 2)

        assert result.claimed is False
        assert "not claimable" in result.reason

    def test_unknown_task(self, github):
        plan = github.add_plan()

        result = _make_claimer(github).claim_task(OWNER, REPO, plan.number, 5)

        assert result.claimed is False
        assert result.reason == "task not found"

    def test_lost_race_backs_off_without_writing(self, github):
        plan = github.add_plan()

        def rival_writes(seconds):
            _set_task(github, plan.number, 1, assignee="agent-b")

        result = _make_claimer(github, sleep=rival_writes).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is False
        assert result.claimed_by == "agent-b"
        assert github.comment_bodies(plan.number) == []
        assert github.body_updates == 1

    def test_waits_longer_when_write_not_visible(self, github):
        plan = github.add_plan()
        sleeps = []

        def lagging_reads(seconds):
            sleeps.append(seconds)
            # First re-read sees the old body, the second sees our write
            _set_task(github, plan.number, 1, assignee=None if len(sleeps) == 1 else "agent-a")

        result = _make_claimer(github, sleep=lagging_reads).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is True
        assert sleeps == [1.0, 2.0]

    def test_claim_not_persisted(self, github):
        plan = github.add_plan()

        def write_lost(seconds):
            _set_task(github, plan.number, 1, assignee=None)

        result = _make_claimer(github, sleep=write_lost).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is False
        assert result.claimed_by is None
        assert result.reason == "claim not persisted"

    def test_assignee_without_claimed_status_is_not_a_win(self, github):
        plan = github.add_plan()
        sleeps = []

        def status_reset(seconds):
            sleeps.append(seconds)
            # Our name is still on the task, but it is back to pending
            _set_task(github, plan.number, 1, status="pending", assignee="agent-a")

        result = _make_claimer(github, sleep=status_reset).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is False
        assert result.reason == "claim not persisted"
        assert sleeps == [1.0, 2.0]
        assert github.comment_bodies(plan.number) == []

    def test_claim_comment_is_not_repeated(self, github):
        plan = github.add_plan()
        github.add_comment(plan.number, "🔒 Claiming Task 1: Add search index", author="agent-a")

        _make_claimer(github).claim_task(OWNER, REPO, plan.number, 1)

        assert len(github.comment_bodies(plan.number)) == 1

    def test_issue_assignee_failure_does_not_abort_claim(self, github):
        plan = github.add_plan()
        github.fail_add_assignee = True

        result = _make_claimer(github).claim_task(OWNER, REPO, plan.number, 1)

        assert result.claimed is True


# ===========================================================================
# Progress reporting
# ===========================================================================

class TestReporting:
    @pytest.fixture
    def held(self, github):
        plan = github.add_plan()
        _set_task(github, plan.number, 1, status="in_progress", assignee="agent-a")
        github.issues[plan.number].assignees = ["agent-a"]
        return plan.number

    def test_mark_in_progress(self, github):
        plan = github.add_plan()
        _set_task(github, plan.number, 1, status="claimed", assignee="agent-a")

        _make_claimer(github).mark_in_progress(OWNER, REPO, plan.number, 1)

        assert _task(github, plan.number, 1).status == TaskStatus.IN_PROGRESS

    def test_published_keeps_task_in_progress(self, github, held):
        url = "https://github.com/acme/widgets/pull/9"

        _make_claimer(github).report_task_published(OWNER, REPO, held, 1, url)

        assert _task(github, held, 1).status == TaskStatus.IN_PROGRESS
        assert url in github.comment_bodies(held)[0]

    def test_failure_keeps_assignment_by_default(self, github, held):
        _make_claimer(github).report_task_failed(OWNER, REPO, held, 1, "tests gate failed")

        task = _task(github, held, 1)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assignee == "agent-a"
        assert github.comment_bodies(held) == ["⚠️ Task 1 failed: tests gate failed"]

    def test_failure_with_reset_returns_task_to_pool(self, github, held):
        _make_claimer(github).report_task_failed(OWNER, REPO, held, 1, "boom", reset=True)

        task = _task(github, held, 1)
        assert task.status == TaskStatus.PENDING
        assert task.assignee is None
        assert github.issues[held].assignees == []
        assert github.comment_bodies(held)[0].endswith("Returned to the pool.")

    def test_blocked(self, github, held):
        _make_claimer(github).report_task_blocked(OWNER, REPO, held, 1, "needs API key")

        task = _task(github, held, 1)
        assert task.status == TaskStatus.BLOCKED
        assert task.assignee == "agent-a"
        assert github.issues[held].labels == ["plan", "plan:blocked"]
        assert github.issues[held].assignees == []
        assert github.comment_bodies(held) == ["🚧 Task 1 is blocked: needs API key"]
