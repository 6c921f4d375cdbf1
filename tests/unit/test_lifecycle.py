"""Tests for the workspace lifecycle controller."""

from datetime import timedelta

import pytest

from fleet_coordinator.core.config import CoordinationConfig
from fleet_coordinator.core.lifecycle import (
    WorkspaceLifecycleController,
    WorkspaceState,
    is_agreement_comment,
)
from fleet_coordinator.core.plan import TaskStatus, parse_plan, update_task_in_plan_body
from fleet_coordinator.core.plan_issues import PlanIssueStore
from fleet_coordinator.core.workspace import WorkspaceRegistry


@pytest.fixture
def registry(tmp_path):
    return WorkspaceRegistry(tmp_path)


@pytest.fixture
def record(registry):
    return registry.add("https://github.com/acme/widgets")


@pytest.fixture
def controller(github, registry, clock):
    return WorkspaceLifecycleController(
        client=github,
        store=PlanIssueStore(github),
        registry=registry,
        agent_login=github.username,
        config=CoordinationConfig(peers=["agent-b"]),
        now=clock,
    )


def _polled(record, clock):
    record.last_polled = clock.current
    return record


def _sentinel(github, record, author="agent-a", state="open", clock=None):
    created = clock.current - timedelta(hours=1) if clock else None
    issue = github.add_issue(
        "FINISHED: all done", labels=["finished"], author=author, state=state, created_at=created
    )
    record.finished_issue_number = issue.number
    return issue.number


# ===========================================================================
# Agreement detection
# ===========================================================================

class TestAgreementComments:
    @pytest.mark.parametrize("text", ["LGTM!", "Agreed.", "ship it", "👍", "  done  "])
    def test_agreement(self, text):
        assert is_agreement_comment(text) is True

    @pytest.mark.parametrize("text", ["", "Looks good, but add tests", "Please also port the CLI", "yes " * 50])
    def test_not_agreement(self, text):
        assert is_agreement_comment(text) is False


# ===========================================================================
# Polling
# ===========================================================================

class TestPolling:
    def test_poll_plans(self, github, controller, record, registry, clock):
        plan = github.add_plan()

        summary, claimable = controller.poll_plans(record)

        assert summary.plans == 1
        assert summary.tasks_by_status == {"pending": 2}
        assert summary.pending_blocked_by_deps == 1
        assert [(c.plan_number, c.task.number) for c in claimable] == [(plan.number, 1)]
        assert record.active_plan_issues == [plan.number]
        assert record.last_polled == clock.current

        registry.reload()
        assert registry.get("acme", "widgets").active_plan_issues == [plan.number]

    def test_pending_task_with_assignee_is_counted(self, github, controller, record):
        plan = github.add_plan()
        github.issues[plan.number].body = update_task_in_plan_body(plan.body, 1, assignee="agent-b")

        summary, claimable = controller.poll_plans(record)

        assert summary.pending_has_assignee == 1
        assert claimable == []

    def test_open_issues_exclude_plans_sentinels_and_pulls(self, github, controller, record):
        work = github.add_issue("Fix login")
        github.add_plan()
        github.add_issue("FINISHED: done", labels=["finished"])
        pr = github.add_issue("Some PR")
        github.issues[pr.number].is_pull_request = True
        github.add_issue("Old bug", state="closed")

        assert [i.number for i in controller.poll_open_issues(record)] == [work.number]

    def test_state(self, controller, record):
        assert controller.get_state(record) == WorkspaceState.ACTIVE
        record.finished_issue_number = 12
        assert controller.get_state(record) == WorkspaceState.FINISHED

    def test_needs_synthesis_once_plans_are_gone(self, controller, record, clock):
        record.active_plan_issues = [4]
        _polled(record, clock)
        assert controller.get_state(record) == WorkspaceState.ACTIVE

        record.active_plan_issues = []
        assert controller.get_state(record) == WorkspaceState.NEEDS_SYNTHESIS
        assert controller.is_synthesis_eligible(record) is True

    def test_synthesis_cooldown_keeps_workspace_active(self, controller, record, clock):
        _polled(record, clock)
        record.last_plan_synthesis_attempt = clock.current - timedelta(minutes=10)
        assert controller.get_state(record) == WorkspaceState.ACTIVE

        record.last_plan_synthesis_attempt = clock.current - timedelta(hours=2)
        assert controller.get_state(record) == WorkspaceState.NEEDS_SYNTHESIS

    def test_unpolled_workspace_is_active(self, controller, record):
        assert record.last_polled is None
        assert controller.get_state(record) == WorkspaceState.ACTIVE


# ===========================================================================
# Plan synthesis
# ===========================================================================

class TestSynthesizePlan:
    def test_rolls_open_issues_into_plan(self, github, controller, record, clock):
        first = github.add_issue("Fix login", "Login fails on Safari.")
        second = github.add_issue("Add dark mode")

        number = controller.synthesize_plan(_polled(record, clock))

        plan_issue = github.issues[number]
        assert plan_issue.title == "[PLAN] Address 2 open issues in widgets"
        assert plan_issue.labels == ["plan", "plan:active"]
        plan = parse_plan(plan_issue.body, plan_issue.title)
        assert [t.title for t in plan.tasks] == ["Fix login", "Add dark mode"]
        for issue in (first, second):
            assert github.issues[issue.number].state == "closed"
            assert github.comment_bodies(issue.number) == [f"Rolled into plan #{number} — closing."]
        assert record.active_plan_issues == [number]
        assert record.last_plan_synthesis_attempt == clock.current

    def test_not_eligible_before_first_poll(self, github, controller, record):
        github.add_issue("Fix login")

        assert controller.synthesize_plan(record) is None
        assert record.last_plan_synthesis_attempt is None

    def test_not_eligible_with_active_plans(self, github, controller, record, clock):
        github.add_issue("Fix login")
        record.active_plan_issues = [3]

        assert controller.synthesize_plan(_polled(record, clock)) is None

    def test_cooldown(self, github, controller, record, clock):
        github.add_issue("Fix login")
        record.last_plan_synthesis_attempt = clock.current - timedelta(minutes=10)

        assert controller.synthesize_plan(_polled(record, clock)) is None
        assert len(github.issues) == 1

    def test_plan_appearing_mid_synthesis_wins(self, github, controller, record, clock):
        github.add_issue("Fix login")
        plan = github.add_plan()

        assert controller.synthesize_plan(_polled(record, clock)) is None
        assert record.active_plan_issues == [plan.number]
        assert record.last_plan_synthesis_attempt == clock.current

    def test_concurrent_older_plan_supersedes_ours(self, github, controller, record, clock, monkeypatch):
        issue = github.add_issue("Fix login")
        create_plan = controller.store.create_plan
        rival = {}

        def racing_create_plan(owner, repo, definition):
            rival["number"] = github.add_plan(author="agent-b").number
            return create_plan(owner, repo, definition)

        monkeypatch.setattr(controller.store, "create_plan", racing_create_plan)

        assert controller.synthesize_plan(_polled(record, clock)) is None

        ours = max(github.issues)
        assert github.issues[ours].state == "closed"
        assert github.issues[ours].labels == ["plan", "plan:superseded"]
        assert github.comment_bodies(ours)[0].startswith(f"Superseded by #{rival['number']}")
        assert github.issues[rival["number"]].state == "open"
        assert github.issues[issue.number].state == "open"
        assert record.active_plan_issues == [rival["number"]]

    def test_younger_concurrent_plan_is_superseded(self, github, controller, record, clock, monkeypatch):
        github.add_issue("Fix login")
        create_plan = controller.store.create_plan
        rival = {}

        def racing_create_plan(owner, repo, definition):
            ours = create_plan(owner, repo, definition)
            rival["number"] = github.add_plan(author="agent-b").number
            return ours

        monkeypatch.setattr(controller.store, "create_plan", racing_create_plan)

        number = controller.synthesize_plan(_polled(record, clock))

        assert github.issues[number].state == "open"
        assert github.issues[rival["number"]].state == "closed"
        assert github.comment_bodies(rival["number"])[0].startswith(f"Superseded by #{number}")

    def test_no_issues_runs_health_check_when_due(self, github, controller, record, clock):
        github.files["README.md"] = "# Widgets\n\n- [ ] Add dark mode\n"

        assert controller.synthesize_plan(_polled(record, clock)) is None

        titles = [i.title for i in github.issues.values()]
        assert titles == ["Add dark mode"]
        assert record.last_health_check_attempt == clock.current
        assert record.is_finished is False

    def test_no_issues_and_health_check_recent_finishes(self, github, controller, record, clock):
        record.last_health_check_attempt = clock.current - timedelta(hours=1)

        controller.synthesize_plan(_polled(record, clock))

        sentinel = github.issues[record.finished_issue_number]
        assert sentinel.title == "FINISHED: no open issues or plans remain"
        assert sentinel.labels == ["finished"]


# ===========================================================================
# Health check and sentinel creation
# ===========================================================================

class TestHealthCheck:
    def test_unchecked_items_become_issues(self, github, controller, record, clock):
        github.files["README.md"] = "- [ ] Add dark mode\n- [x] Ship v1\n"
        github.files["AGENTS.md"] = "* [ ] Write docs\n- [ ] Add dark mode\n"

        created = controller.run_health_check(record)

        assert [github.issues[n].title for n in created] == ["Add dark mode", "Write docs"]
        assert record.finished_issue_number is None
        assert record.last_health_check_attempt == clock.current

    def test_missing_docs_finish_workspace(self, github, controller, record):
        assert controller.run_health_check(record) == []
        assert github.issues[record.finished_issue_number].title == "FINISHED: no README.md or AGENTS.md to assess"

    def test_no_remaining_work_finishes_workspace(self, github, controller, record):
        github.files["README.md"] = "# Widgets\n\n- [x] Everything\n"

        controller.run_health_check(record)

        sentinel = github.issues[record.finished_issue_number]
        assert sentinel.title == "FINISHED: acme/widgets has no open issues and no outstanding checklist items"

    def test_existing_sentinel_is_adopted(self, github, controller, record):
        existing = github.add_issue("FINISHED: done", labels=["finished"], author="agent-b")
        record.active_plan_issues = [4]

        number = controller.create_finished_sentinel(record, "nothing left")

        assert number == existing.number
        assert len(github.issues) == 1
        assert record.active_plan_issues == []


# ===========================================================================
# Sentinel verification
# ===========================================================================

class TestVerifyFinishedSentinel:
    def test_not_finished(self, controller, record):
        assert controller.verify_finished_sentinel(record) is False

    def test_own_sentinel_closed_resumes(self, github, controller, record):
        _sentinel(github, record, state="closed")

        assert controller.verify_finished_sentinel(record) is False
        assert record.finished_issue_number is None

    def test_closed_with_open_work_resumes(self, github, controller, record):
        _sentinel(github, record, author="agent-b", state="closed")
        github.add_issue("Fix login")

        assert controller.verify_finished_sentinel(record) is False
        assert record.finished_issue_number is None

    def test_closed_without_work_is_reopened(self, github, controller, record):
        number = _sentinel(github, record, author="agent-b", state="closed")

        assert controller.verify_finished_sentinel(record) is True
        assert github.issues[number].state == "open"
        assert github.comment_bodies(number)[0].startswith("Reopening")

    def test_open_sentinel_of_another_agent(self, github, controller, record):
        _sentinel(github, record, author="agent-b")
        github.add_comment(record.finished_issue_number, "Please add exports")

        assert controller.verify_finished_sentinel(record) is True

    def test_open_without_comments_or_activity(self, github, controller, record, clock):
        _sentinel(github, record, clock=clock)

        assert controller.verify_finished_sentinel(record) is True

    def test_new_human_issue_resumes_workspace(self, github, controller, record, clock):
        number = _sentinel(github, record, clock=clock)
        issue = github.add_issue("Please add exports", created_at=clock.current)

        assert controller.verify_finished_sentinel(record) is False
        assert github.issues[number].state == "closed"
        assert github.comment_bodies(number) == [
            f"Human activity detected on #{issue.number} — closing sentinel to resume workspace."
        ]
        assert record.finished_issue_number is None

    def test_human_comment_elsewhere_resumes_workspace(self, github, controller, record, clock):
        old = github.add_issue("Old question", created_at=clock.current - timedelta(days=2))
        _sentinel(github, record, clock=clock)
        github.add_comment(old.number, "One more thing", created_at=clock.current)

        assert controller.verify_finished_sentinel(record) is False

    def test_peer_activity_is_ignored(self, github, controller, record, clock):
        _sentinel(github, record, clock=clock)
        github.add_issue("Peer memo", author="agent-b", created_at=clock.current)

        assert controller.verify_finished_sentinel(record) is True

    def test_agreement_comments_keep_finished(self, github, controller, record, clock):
        number = _sentinel(github, record, clock=clock)
        github.add_comment(number, "LGTM!")
        github.add_comment(number, "ship it", author="agent-b")

        assert controller.verify_finished_sentinel(record) is True
        assert github.issues[number].state == "open"

    def test_feedback_becomes_issue(self, github, controller, record, clock):
        number = _sentinel(github, record, clock=clock)
        github.add_comment(number, "Agreed")
        github.add_comment(number, "The CSV export still drops unicode.")

        assert controller.verify_finished_sentinel(record) is False

        feedback = [i for i in github.issues.values() if i.title.startswith("Feedback from")]
        assert len(feedback) == 1
        assert feedback[0].title == f"Feedback from #{number}: remaining work identified"
        assert "**@human:**\nThe CSV export still drops unicode." in feedback[0].body
        assert "Agreed" not in feedback[0].body
        assert github.issues[number].state == "closed"
        assert record.finished_issue_number is None

    def test_api_error_assumes_still_finished(self, github, controller, record):
        _sentinel(github, record)
        github.fail_get_issue = True

        assert controller.verify_finished_sentinel(record) is True


# ===========================================================================
# Housekeeping
# ===========================================================================

class TestHousekeeping:
    def test_stale_issues(self, github, controller, record, clock):
        stale = github.add_issue("Old bug", updated_at=clock.current - timedelta(days=8))
        fresh = github.add_issue("New bug", updated_at=clock.current - timedelta(days=5))
        memo = github.add_issue("Memo", labels=["memo"], updated_at=clock.current - timedelta(days=4))
        github.add_issue("Talk", labels=["discussion"], updated_at=clock.current - timedelta(days=30))
        github.add_plan(updated_at=clock.current - timedelta(days=30))

        closed = controller.cleanup_stale_issues(record)

        assert closed == [stale.number, memo.number]
        assert github.issues[fresh.number].state == "open"

    def test_handled_issues(self, github, controller, record, clock):
        long_ago = clock.current - timedelta(hours=25)
        answered = github.add_issue("Question", updated_at=long_ago)
        github.add_comment(answered.number, "How do I run it?")
        github.add_comment(answered.number, "Run `make dev`.", author="agent-a")
        waiting = github.add_issue("Other question", updated_at=long_ago)
        github.add_comment(waiting.number, "Still broken", author="human")
        recent = github.add_issue("Recent", updated_at=clock.current - timedelta(hours=2))
        github.add_comment(recent.number, "On it", author="agent-a")

        assert controller.close_handled_issues(record) == [answered.number]

    def test_run_housekeeping(self, github, controller, record, clock):
        stale = github.add_issue("Old bug", updated_at=clock.current - timedelta(days=8))

        result = controller.run_housekeeping(record)

        assert result.stale_closed == [stale.number]
        assert result.handled_closed == []


# ===========================================================================
# Stuck tasks
# ===========================================================================

class TestRecoverStuckTasks:
    @pytest.fixture
    def held_plan(self, github):
        plan = github.add_plan()
        github.issues[plan.number].body = update_task_in_plan_body(
            plan.body, 1, status="in_progress", assignee="agent-b"
        )
        github.issues[plan.number].assignees = ["agent-b"]
        return plan.number

    def test_first_sighting_is_recorded(self, controller, record, registry, held_plan, clock):
        assert controller.recover_stuck_tasks(record) == []
        assert record.stuck_tasks == {f"{held_plan}#1": clock.current}

        registry.reload()
        assert list(registry.get("acme", "widgets").stuck_tasks) == [f"{held_plan}#1"]

    def test_reset_after_timeout(self, github, controller, record, held_plan, clock):
        controller.recover_stuck_tasks(record)
        clock.current += timedelta(minutes=31)

        assert controller.recover_stuck_tasks(record) == [(held_plan, 1)]

        issue = github.issues[held_plan]
        task = parse_plan(issue.body, issue.title).get_task(1)
        assert task.status == TaskStatus.PENDING
        assert task.assignee is None
        assert issue.assignees == []
        assert github.comment_bodies(held_plan) == [
            "⏱️ Task 1 was held by @agent-b with no open PR for over 30 minutes. Returned to the pool."
        ]
        assert record.stuck_tasks == {}

    def test_task_with_open_pr_is_not_stuck(self, github, controller, record, held_plan, clock):
        github.add_pull("task-1-add-search-index", author="agent-b")
        controller.recover_stuck_tasks(record)
        clock.current += timedelta(hours=2)

        assert controller.recover_stuck_tasks(record) == []
        assert record.stuck_tasks == {}

    def test_released_task_is_forgotten(self, github, controller, record, held_plan):
        controller.recover_stuck_tasks(record)
        issue = github.issues[held_plan]
        issue.body = update_task_in_plan_body(issue.body, 1, status="pending", assignee=None)

        controller.recover_stuck_tasks(record)

        assert record.stuck_tasks == {}
