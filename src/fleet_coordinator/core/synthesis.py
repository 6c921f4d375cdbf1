"""Pluggable strategies for turning workspace state into new work.

The lifecycle controller never decides *what* to build; it asks a
PlanSynthesizer to turn open issues into a plan and a HealthAssessor to judge
whether an idle repository still has work. Both defaults are deterministic.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from ..integrations.github.models import IssueSnapshot
from .plan import PlanDefinition, TaskDefinition

MAX_DESCRIPTION_CHARS = 1500
_UNCHECKED_ITEM_RE = re.compile(r"^\s*[-*] \[ \]\s+(.+)$")


@dataclass
class SynthesisResult:
    definition: PlanDefinition
    rolled_up_issues: List[int] = field(default_factory=list)


@dataclass
class HealthAssessment:
    has_remaining_work: bool
    summary: str
    new_issues: List[TaskDefinition] = field(default_factory=list)


class PlanSynthesizer(Protocol):
    def synthesize(self, owner: str, repo: str, issues: List[IssueSnapshot]) -> Optional[SynthesisResult]:
        ...


class HealthAssessor(Protocol):
    def assess(
        self, owner: str, repo: str, readme: Optional[str], agents_md: Optional[str]
    ) -> HealthAssessment:
        ...


class RollupPlanSynthesizer:
    """One task per open issue, in issue order, with no dependencies."""

    def synthesize(self, owner: str, repo: str, issues: List[IssueSnapshot]) -> Optional[SynthesisResult]:
        if not issues:
            return None
        tasks = []
        for issue in issues:
            body = issue.body.strip()
            if len(body) > MAX_DESCRIPTION_CHARS:
                body = body[:MAX_DESCRIPTION_CHARS].rstrip() + "…"
            tasks.append(TaskDefinition(
                title=issue.title,
                description=f"From #{issue.number}.\n\n{body}" if body else f"From #{issue.number}.",
            ))
        if len(issues) == 1:
            title = issues[0].title
        else:
            title = f"Address {len(issues)} open issues in {repo}"
        definition = PlanDefinition(
            title=title,
            goal=f"Resolve the open issues in {owner}/{repo}.",
            context="\n".join(f"- #{i.number}: {i.title}" for i in issues),
            tasks=tasks,
        )
        return SynthesisResult(definition=definition, rolled_up_issues=[i.number for i in issues])


class ChecklistHealthAssessor:
    """Treats unchecked `- [ ]` items in README.md / AGENTS.md as remaining work."""

    def assess(
        self, owner: str, repo: str, readme: Optional[str], agents_md: Optional[str]
    ) -> HealthAssessment:
        items = []
        for text in (readme, agents_md):
            for line in (text or "").splitlines():
                match = _UNCHECKED_ITEM_RE.match(line)
                if match and match.group(1).strip() not in items:
                    items.append(match.group(1).strip())
        if not items:
            return HealthAssessment(
                has_remaining_work=False,
                summary=f"{owner}/{repo} has no open issues and no outstanding checklist items",
            )
        return HealthAssessment(
            has_remaining_work=True,
            summary=f"{len(items)} unchecked items in project docs",
            new_issues=[
                TaskDefinition(title=item, description=f"Outstanding item from the project docs: {item}")
                for item in items
            ],
        )
