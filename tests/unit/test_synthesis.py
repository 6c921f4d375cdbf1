"""Tests for the default plan synthesizer and health assessor."""

from fleet_coordinator.core.plan import generate_plan_markdown, parse_plan
from fleet_coordinator.core.synthesis import (
    MAX_DESCRIPTION_CHARS,
    ChecklistHealthAssessor,
    RollupPlanSynthesizer,
)
from fleet_coordinator.integrations.github.models import IssueSnapshot


def _issue(number, title, body=""):
    return IssueSnapshot(number=number, title=title, body=body)


class TestRollupPlanSynthesizer:
    def test_no_issues(self):
        assert RollupPlanSynthesizer().synthesize("acme", "widgets", []) is None

    def test_single_issue_keeps_its_title(self):
        result = RollupPlanSynthesizer().synthesize("acme", "widgets", [_issue(3, "Fix login", "Safari only.")])

        assert result.definition.title == "Fix login"
        assert result.definition.tasks[0].description == "From #3.\n\nSafari only."
        assert result.rolled_up_issues == [3]

    def test_multiple_issues(self):
        issues = [_issue(3, "Fix login"), _issue(5, "Add dark mode")]

        result = RollupPlanSynthesizer().synthesize("acme", "widgets", issues)

        assert result.definition.title == "Address 2 open issues in widgets"
        assert [t.title for t in result.definition.tasks] == ["Fix login", "Add dark mode"]
        assert result.definition.tasks[1].description == "From #5."
        assert "- #5: Add dark mode" in result.definition.context
        assert result.rolled_up_issues == [3, 5]

    def test_long_bodies_are_truncated(self):
        result = RollupPlanSynthesizer().synthesize("acme", "widgets", [_issue(3, "Big", "x" * 4000)])

        description = result.definition.tasks[0].description
        assert description.endswith("…")
        assert len(description) == len("From #3.\n\n") + MAX_DESCRIPTION_CHARS + 1

    def test_definition_renders_to_parseable_plan(self):
        result = RollupPlanSynthesizer().synthesize(
            "acme", "widgets", [_issue(3, "Fix login"), _issue(5, "Add dark mode")]
        )

        plan = parse_plan(generate_plan_markdown(result.definition), f"[PLAN] {result.definition.title}")

        assert [t.number for t in plan.tasks] == [1, 2]
        assert all(t.status == "pending" for t in plan.tasks)


class TestChecklistHealthAssessor:
    def test_collects_unchecked_items(self):
        readme = "# Widgets\n\n- [ ] Add dark mode\n- [x] Ship v1\n  * [ ] Write docs\n"
        agents = "- [ ] Add dark mode\n"

        assessment = ChecklistHealthAssessor().assess("acme", "widgets", readme, agents)

        assert assessment.has_remaining_work is True
        assert [i.title for i in assessment.new_issues] == ["Add dark mode", "Write docs"]
        assert assessment.summary == "2 unchecked items in project docs"

    def test_nothing_left(self):
        assessment = ChecklistHealthAssessor().assess("acme", "widgets", "- [x] Done", None)

        assert assessment.has_remaining_work is False
        assert assessment.new_issues == []
