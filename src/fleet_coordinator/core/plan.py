"""Plan documents: markdown issue bodies describing a goal and numbered tasks.

A plan lives in the body of one issue. Everything here is pure text
processing with no I/O; `plan_issues.PlanIssueStore` does the reading and
writing. Updates patch the raw body line-by-line instead of regenerating it so
human edits outside the structured fields survive.
"""

import logging
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

PLAN_MARKER = "[PLAN]"
UNCLAIMED_PLACEHOLDER = "(empty if unclaimed)"
DEFAULT_VERIFICATION = ["All tasks completed", "Tests pass", "Integration works"]

_TASK_HEADER_RE = re.compile(r"^### Task (\d+):\s*(.+)$")
_TASK_HEADER_PREFIX_RE = re.compile(r"^### Task (\d+):")
_STATUS_RE = re.compile(r"^\*\*Status:\*\*\s*(.*)$")
_ASSIGNEE_RE = re.compile(r"^\*\*Assignee:\*\*\s*@?(.*)$")
_ESTIMATE_RE = re.compile(r"^\*\*Estimate:\*\*\s*(.+)$")
_DEPENDENCIES_RE = re.compile(r"^\*\*Dependencies:\*\*\s*(.*)$")
_FILE_RE = re.compile(r"^- `([^`]+)`")
_CHECKBOX_RE = re.compile(r"^- \[([ xX])\]\s*(.+)$")
_DEPENDENCY_REF_RE = re.compile(r"^(?:task\s*)?#?(\d+)$", re.IGNORECASE)
_BRANCH_TASK_RE = re.compile(r"^task-(\d+)-")

_UNSET = object()


class TaskStatus(str, Enum):
    """Task lifecycle: pending → claimed → in_progress → completed; blocked is an explicit stop."""
    PENDING = "pending"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETE = "complete"


class PlanTask(BaseModel):
    """One numbered task inside a plan."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    number: int
    title: str
    status: TaskStatus = TaskStatus.PENDING
    assignee: Optional[str] = None
    estimate: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)  # "Task N" references
    files: List[str] = Field(default_factory=list)
    description: str = ""

    @property
    def ref(self) -> str:
        return f"Task {self.number}"


class VerificationItem(BaseModel):
    text: str
    checked: bool = False


class Plan(BaseModel):
    """Structured view of a plan issue."""

    title: str
    goal: str = ""
    context: str = ""
    tasks: List[PlanTask] = Field(default_factory=list)
    verification: List[VerificationItem] = Field(default_factory=list)
    raw_body: str = ""

    @property
    def status(self) -> PlanStatus:
        return derive_plan_status(self.tasks)

    def get_task(self, number: int) -> Optional[PlanTask]:
        for task in self.tasks:
            if task.number == number:
                return task
        return None

    @property
    def is_complete(self) -> bool:
        return bool(self.tasks) and all(t.status == TaskStatus.COMPLETED for t in self.tasks)


class TaskDefinition(BaseModel):
    """Input for a new task when generating a plan."""
    title: str
    description: str
    estimate: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


class PlanDefinition(BaseModel):
    """Input for generating a brand new plan issue body."""
    title: str
    goal: str
    context: str = ""
    tasks: List[TaskDefinition]
    verification: Optional[List[str]] = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def normalize_dependency(ref: str) -> str:
    """Map `1`, `#1`, `task 1`, `Task 1` to the canonical `Task 1` form."""
    ref = ref.strip()
    match = _DEPENDENCY_REF_RE.match(ref)
    if match:
        return f"Task {int(match.group(1))}"
    return ref


def parse_plan(body: str, title: str) -> Optional[Plan]:
    """Parse an issue body into a Plan.

    Returns None for anything that is not a well-formed plan (no `[PLAN]`
    marker, no tasks, duplicate task numbers). Callers treat None as "not a
    plan", never as an error.
    """
    if not body:
        return None
    if not title.startswith(PLAN_MARKER) and f"# {PLAN_MARKER}" not in body:
        return None

    plan = Plan(title=title.replace(PLAN_MARKER, "", 1).strip(), raw_body=body)
    goal_parts: List[str] = []
    context_parts: List[str] = []

    section = "none"
    current: Optional[PlanTask] = None
    description: List[str] = []
    in_files = False

    def flush():
        nonlocal current, description
        if current is not None:
            current.description = "\n".join(description).strip()
            plan.tasks.append(current)
        current = None
        description = []

    for line in body.split("\n"):
        trimmed = line.strip()

        if trimmed.startswith("## ") and not trimmed.startswith("### "):
            flush()
            heading = trimmed[3:].strip().lower()
            if heading.startswith("goal"):
                section = "goal"
            elif heading.startswith("context"):
                section = "context"
            elif heading.startswith("tasks"):
                section = "tasks"
            elif heading.startswith("verification"):
                section = "verification"
            else:
                section = "none"
            continue

        if section == "goal":
            if trimmed:
                goal_parts.append(trimmed)
        elif section == "context":
            if trimmed:
                context_parts.append(trimmed)
        elif section == "verification":
            match = _CHECKBOX_RE.match(trimmed)
            if match:
                plan.verification.append(
                    VerificationItem(text=match.group(2).strip(), checked=match.group(1) != " ")
                )
        elif section == "tasks":
            header = _TASK_HEADER_RE.match(trimmed)
            if header:
                flush()
                current = PlanTask(number=int(header.group(1)), title=header.group(2).strip())
                in_files = False
                continue
            if current is None:
                continue

            status = _STATUS_RE.match(trimmed)
            if status:
                value = status.group(1).strip().lower()
                if value in {s.value for s in TaskStatus}:
                    current.status = TaskStatus(value).value
                continue

            assignee = _ASSIGNEE_RE.match(trimmed)
            if assignee:
                value = assignee.group(1).strip()
                current.assignee = value if value and value != UNCLAIMED_PLACEHOLDER else None
                continue

            estimate = _ESTIMATE_RE.match(trimmed)
            if estimate:
                current.estimate = estimate.group(1).strip()
                continue

            deps = _DEPENDENCIES_RE.match(trimmed)
            if deps:
                value = deps.group(1).strip()
                if value and value.lower() != "none":
                    current.dependencies = [
                        normalize_dependency(d) for d in value.split(",") if d.strip()
                    ]
                continue

            if trimmed == "**Files:**":
                in_files = True
                continue
            if in_files:
                file_match = _FILE_RE.match(trimmed)
                if file_match:
                    current.files.append(file_match.group(1))
                    continue
                in_files = False

            if trimmed == "**Description:**" or trimmed == "---":
                continue

            description.append(line.rstrip("\r"))

    flush()

    plan.goal = " ".join(goal_parts)
    plan.context = "\n".join(context_parts)

    if not plan.tasks:
        logger.debug(f"Plan marker present but no tasks found in '{title}'")
        return None

    numbers = [t.number for t in plan.tasks]
    if len(numbers) != len(set(numbers)):
        logger.warning(f"Plan '{title}' has duplicate task numbers {numbers}, ignoring it")
        return None

    logger.debug(f"Parsed plan '{plan.title}': {len(plan.tasks)} tasks, status={plan.status.value}")
    return plan


def derive_plan_status(tasks: List[PlanTask]) -> PlanStatus:
    if tasks and all(t.status == TaskStatus.COMPLETED for t in tasks):
        return PlanStatus.COMPLETE
    if any(t.status == TaskStatus.BLOCKED for t in tasks):
        return PlanStatus.BLOCKED
    return PlanStatus.ACTIVE


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _format_assignee(assignee: Optional[str]) -> str:
    return f"@{assignee}" if assignee else UNCLAIMED_PLACEHOLDER


def format_task_markdown(
    number: int,
    title: str,
    description: str,
    status: str = TaskStatus.PENDING.value,
    assignee: Optional[str] = None,
    estimate: Optional[str] = None,
    dependencies: Optional[List[str]] = None,
    files: Optional[List[str]] = None,
) -> str:
    lines = [
        f"### Task {number}: {title}",
        f"**Status:** {TaskStatus(status).value}",
        f"**Assignee:** {_format_assignee(assignee)}",
    ]
    if estimate:
        lines.append(f"**Estimate:** {estimate}")
    lines.append(f"**Dependencies:** {', '.join(dependencies) if dependencies else 'none'}")
    if files:
        lines.append("**Files:**")
        lines.extend(f"- `{f}`" for f in files)
    lines.append("")
    lines.append("**Description:**")
    lines.append(description)
    return "\n".join(lines)


def _render_plan(
    title: str,
    goal: str,
    context: str,
    task_blocks: List[str],
    verification: List[VerificationItem],
) -> str:
    lines = [f"# {PLAN_MARKER} {title}", "", "## Goal", goal, "", "## Context", context, "", "## Tasks", ""]
    for block in task_blocks:
        lines.extend([block, "", "---", ""])
    lines.append("## Verification")
    for item in verification:
        lines.append(f"- [{'x' if item.checked else ' '}] {item.text}")
    return "\n".join(lines)


def generate_plan_markdown(definition: PlanDefinition) -> str:
    """Render a new plan body; tasks are numbered from 1 and start pending."""
    blocks = [
        format_task_markdown(
            number=i,
            title=task.title,
            description=task.description,
            estimate=task.estimate,
            dependencies=[normalize_dependency(d) for d in task.dependencies],
            files=task.files,
        )
        for i, task in enumerate(definition.tasks, start=1)
    ]
    verification = [
        VerificationItem(text=text)
        for text in (definition.verification or DEFAULT_VERIFICATION)
    ]
    return _render_plan(definition.title, definition.goal, definition.context, blocks, verification)


def serialize_plan(plan: Plan) -> str:
    """Render a full body from a Plan's structured fields.

    Used when a body has to be produced from scratch; day-to-day updates go
    through update_task_in_plan_body instead.
    """
    blocks = [
        format_task_markdown(
            number=t.number,
            title=t.title,
            description=t.description,
            status=t.status,
            assignee=t.assignee,
            estimate=t.estimate,
            dependencies=t.dependencies,
            files=t.files,
        )
        for t in plan.tasks
    ]
    return _render_plan(plan.title, plan.goal, plan.context, blocks, plan.verification)


def update_task_in_plan_body(
    body: str,
    task_number: int,
    *,
    status=_UNSET,
    assignee=_UNSET,
) -> str:
    """Patch the status and/or assignee lines of one task in a raw plan body.

    Only the target task's `**Status:**` / `**Assignee:**` lines change. A
    missing line is inserted right after the task header (status) or the
    status line (assignee). Pass assignee=None to clear it.
    """
    lines = body.split("\n")

    start = end = None
    for i, line in enumerate(lines):
        trimmed = line.strip()
        header = _TASK_HEADER_PREFIX_RE.match(trimmed)
        if start is None:
            if header and int(header.group(1)) == task_number:
                start = i
            continue
        if header or (trimmed.startswith("## ") and not trimmed.startswith("### ")):
            end = i
            break
    if start is None:
        return body
    if end is None:
        end = len(lines)

    eol = "\r" if lines[start].endswith("\r") else ""
    status_idx = assignee_idx = None
    for i in range(start + 1, end):
        trimmed = lines[i].strip()
        if status_idx is None and _STATUS_RE.match(trimmed):
            status_idx = i
        elif assignee_idx is None and _ASSIGNEE_RE.match(trimmed):
            assignee_idx = i

    if status is not _UNSET:
        status_line = f"**Status:** {TaskStatus(status).value}{eol}"
        if status_idx is not None:
            lines[status_idx] = status_line
        else:
            status_idx = start + 1
            lines.insert(status_idx, status_line)
            if assignee_idx is not None:
                assignee_idx += 1

    if assignee is not _UNSET:
        assignee_line = f"**Assignee:** {_format_assignee(assignee)}{eol}"
        if assignee_idx is not None:
            lines[assignee_idx] = assignee_line
        else:
            lines.insert((status_idx if status_idx is not None else start) + 1, assignee_line)

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _completed_refs(plan: Plan) -> set:
    return {t.ref for t in plan.tasks if t.status == TaskStatus.COMPLETED}


def are_dependencies_met(task: PlanTask, plan: Plan) -> bool:
    """True when every referenced task exists and is completed."""
    completed = _completed_refs(plan)
    return all(dep in completed for dep in task.dependencies)


def is_claimable(task: PlanTask, plan: Plan) -> bool:
    return (
        task.status == TaskStatus.PENDING
        and not task.assignee
        and are_dependencies_met(task, plan)
    )


def get_claimable_tasks(plan: Plan) -> List[PlanTask]:
    """Pending, unassigned tasks whose dependencies are all completed, in plan order."""
    return [t for t in plan.tasks if is_claimable(t, plan)]


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


def task_branch_name(task_number: int, title: str) -> str:
    """Dedicated branch for a task: `task-<n>-<slug>`."""
    return f"task-{task_number}-{slugify(title)}"


def task_number_from_branch(ref: Optional[str]) -> Optional[int]:
    """Reverse of task_branch_name; None for branches that are not task branches."""
    match = _BRANCH_TASK_RE.match(ref or "")
    return int(match.group(1)) if match else None
