"""Verification gates a task must pass before its PR is opened.

Gates run in order against a local checkout: branch, changes, tests, push.
The first failing gate raises VerificationError naming the gate; publishing
happens only after all of them pass.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..integrations.github.client import GitHubClient
from ..integrations.github.errors import GitHubAPIError
from ..integrations.github.models import PullRequestSnapshot
from ..utils.error_handling import log_and_ignore
from ..utils.subprocess_utils import (
    SubprocessError,
    check_command_exists,
    run_command,
    run_git_command,
)
from .plan import PlanTask

logger = logging.getLogger(__name__)

MAX_TEST_OUTPUT_CHARS = 2000
NPM_PLACEHOLDER_TEST = "no test specified"

_MISSING_RUNNER_MARKERS = (
    "command not found",
    "cannot find module",
    "err_module_not_found",
    "enoent",
)


class VerificationError(Exception):
    def __init__(self, gate: str, message: str):
        self.gate = gate
        self.message = message
        super().__init__(f"{gate} gate failed: {message}")


@dataclass
class ChangeSummary:
    commit_count: int
    files: List[str] = field(default_factory=list)
    diff_stat: str = ""


@dataclass
class TestRunResult:
    tests_run: bool
    passed: bool
    command: Optional[List[str]] = None
    output: str = ""


@dataclass
class VerificationReport:
    branch: str
    changes: ChangeSummary
    tests: TestRunResult
    pushed: bool = False


def _is_missing_runner(output: str) -> bool:
    lowered = output.lower()
    if any(marker in lowered for marker in _MISSING_RUNNER_MARKERS):
        return True
    return "not found" in lowered and "err!" in lowered


def detect_test_command(workdir: Path) -> Optional[List[str]]:
    """Pick the project's test runner from files in the checkout, if any."""
    package_json = workdir / "package.json"
    if package_json.exists():
        try:
            scripts = json.loads(package_json.read_text()).get("scripts") or {}
        except (json.JSONDecodeError, OSError, AttributeError):
            scripts = {}
        test_script = scripts.get("test", "") if isinstance(scripts, dict) else ""
        if test_script and NPM_PLACEHOLDER_TEST not in test_script:
            return ["npm", "test"]

    if any((workdir / name).exists() for name in ("pyproject.toml", "pytest.ini", "setup.cfg")) or (
        workdir / "tests"
    ).is_dir():
        return ["python", "-m", "pytest", "-q"]

    makefile = workdir / "Makefile"
    if makefile.exists():
        try:
            if any(line.startswith("test:") for line in makefile.read_text().splitlines()):
                return ["make", "test"]
        except OSError:
            pass

    return None


class VerificationGates:
    """Runs the gates for one checkout."""

    def __init__(
        self,
        workdir: Path,
        base_branch: str = "main",
        test_timeout: int = 120,
        remote: str = "origin",
        logger_instance: Optional[logging.Logger] = None,
    ):
        self.workdir = Path(workdir)
        self.base_branch = base_branch
        self.test_timeout = test_timeout
        self.remote = remote
        self._log = logger_instance or logger

    @property
    def base_ref(self) -> str:
        return f"{self.remote}/{self.base_branch}"

    def _git(self, *args: str) -> str:
        return run_git_command(list(args), cwd=self.workdir).stdout.strip()

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def verify_branch(self, expected: str) -> str:
        try:
            current = self._git("rev-parse", "--abbrev-ref", "HEAD")
        except SubprocessError as e:
            raise VerificationError("branch", f"cannot determine branch: {e.stderr.strip()}") from e
        if current in (self.base_branch, "HEAD"):
            raise VerificationError("branch", f"on '{current}', expected a task branch")
        if current != expected:
            raise VerificationError("branch", f"on '{current}', expected '{expected}'")
        return current

    def verify_changes(self) -> ChangeSummary:
        try:
            log = self._git("log", f"{self.base_ref}..HEAD", "--oneline")
            stat = self._git("diff", self.base_ref, "--stat")
            shortstat = self._git("diff", self.base_ref, "--shortstat")
        except SubprocessError as e:
            raise VerificationError("changes", f"cannot diff against {self.base_ref}: {e.stderr.strip()}") from e

        commit_count = len([line for line in log.splitlines() if line.strip()])
        if commit_count == 0:
            raise VerificationError("changes", f"no commits ahead of {self.base_ref}")

        # Last --stat line is the "N files changed" summary
        stat_lines = stat.splitlines()[:-1]
        files = [line.split("|")[0].strip() for line in stat_lines if "|" in line]
        return ChangeSummary(commit_count=commit_count, files=files, diff_stat=shortstat)

    def run_tests(self) -> TestRunResult:
        command = detect_test_command(self.workdir)
        if command is None:
            self._log.info(f"No test runner detected in {self.workdir}, skipping tests")
            return TestRunResult(tests_run=False, passed=True)
        if not check_command_exists(command[0]):
            self._log.info(f"Test runner {command[0]} not on PATH, skipping tests")
            return TestRunResult(tests_run=False, passed=True, command=command)

        try:
            result = run_command(command, cwd=self.workdir, check=False, timeout=self.test_timeout)
        except FileNotFoundError:
            self._log.info(f"Test runner {command[0]} not installed, skipping tests")
            return TestRunResult(tests_run=False, passed=True, command=command)
        except subprocess.TimeoutExpired as e:
            raise VerificationError("tests", f"{' '.join(command)} timed out after {self.test_timeout}s") from e

        output = (result.stdout or "") + (result.stderr or "")
        tail = output[-MAX_TEST_OUTPUT_CHARS:]
        if result.returncode == 0:
            return TestRunResult(tests_run=True, passed=True, command=command, output=tail)
        if _is_missing_runner(output):
            self._log.info(f"Test runner for {' '.join(command)} unavailable, skipping tests")
            return TestRunResult(tests_run=False, passed=True, command=command, output=tail)
        raise VerificationError("tests", f"{' '.join(command)} failed:\n{tail}")

    def verify_push(self, branch: str) -> None:
        try:
            run_git_command(["push", "-u", self.remote, branch], cwd=self.workdir, timeout=120)
            remote_heads = self._git("ls-remote", "--heads", self.remote, branch)
        except SubprocessError as e:
            raise VerificationError("push", e.stderr.strip() or str(e)) from e
        if not remote_heads:
            raise VerificationError("push", f"branch '{branch}' not found on {self.remote} after push")

    def run_all(self, expected_branch: str) -> VerificationReport:
        branch = self.verify_branch(expected_branch)
        changes = self.verify_changes()
        tests = self.run_tests()
        self.verify_push(branch)
        self._log.info(
            f"Verification passed for {branch}: {changes.commit_count} commits, "
            f"{len(changes.files)} files, tests_run={tests.tests_run}"
        )
        return VerificationReport(branch=branch, changes=changes, tests=tests, pushed=True)


def format_pr_body(task: PlanTask, plan_number: int, report: VerificationReport) -> str:
    lines = [task.description or task.title, "", "## Changes"]
    lines.extend(f"- `{f}`" for f in report.changes.files)
    if report.changes.diff_stat:
        lines.extend(["", report.changes.diff_stat])
    lines.extend(["", "## Verification"])
    if report.tests.tests_run:
        lines.append(f"- Tests: `{' '.join(report.tests.command or [])}` passed")
    else:
        lines.append("- Tests: no runnable test suite detected")
    lines.extend(["", f"Part of #{plan_number}"])
    return "\n".join(lines)


def publish_task_pr(
    client: GitHubClient,
    owner: str,
    repo: str,
    task: PlanTask,
    plan_number: int,
    report: VerificationReport,
    base_branch: str = "main",
    logger_instance: Optional[logging.Logger] = None,
) -> PullRequestSnapshot:
    """Open the task PR and request review from every collaborator except ourselves."""
    log = logger_instance or logger
    pr = client.create_pull(
        owner,
        repo,
        title=f"task({task.number}): {task.title}",
        body=format_pr_body(task, plan_number, report),
        head=report.branch,
        base=base_branch,
    )
    try:
        reviewers = [c for c in client.list_collaborators(owner, repo) if c != client.username]
        client.request_reviewers(owner, repo, pr.number, reviewers)
    except GitHubAPIError as e:
        log_and_ignore(e, f"Could not request reviewers on {owner}/{repo}#{pr.number}", logger_instance=log)
    return pr
