"""Task executors: whatever turns a claimed task into commits on its branch."""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from ..utils.subprocess_utils import run_command
from .plan import PlanTask

logger = logging.getLogger(__name__)

# Exit code an executor command uses to say "cannot proceed without help"
BLOCKED_EXIT_CODE = 3
MAX_OUTPUT_CHARS = 4000


@dataclass
class ExecutionResult:
    success: bool
    blocked: bool = False
    error: Optional[str] = None
    output: str = ""


class TaskExecutor(Protocol):
    def execute(self, task: PlanTask, workdir: Path, plan_number: int) -> ExecutionResult:
        ...


class CommandTaskExecutor:
    """Runs a configured command inside the checkout.

    The task is passed as JSON on stdin and as FLEET_TASK_* environment
    variables. Exit 0 is success, exit 3 means blocked, anything else failed.
    """

    def __init__(
        self,
        command: List[str],
        timeout: int = 3600,
        logger_instance: Optional[logging.Logger] = None,
    ):
        if not command:
            raise ValueError("executor command must not be empty")
        self.command = command
        self.timeout = timeout
        self._log = logger_instance or logger

    def _task_env(self, task: PlanTask, plan_number: int) -> dict:
        env = dict(os.environ)
        env.update({
            "FLEET_TASK_NUMBER": str(task.number),
            "FLEET_TASK_TITLE": task.title,
            "FLEET_TASK_DESCRIPTION": task.description,
            "FLEET_TASK_FILES": "\n".join(task.files),
            "FLEET_PLAN_NUMBER": str(plan_number),
        })
        return env

    def execute(self, task: PlanTask, workdir: Path, plan_number: int) -> ExecutionResult:
        payload = json.dumps({"plan_number": plan_number, "task": task.model_dump(mode="json")})
        self._log.info(f"Executing task {task.number} with {self.command[0]} in {workdir}")
        try:
            result = run_command(
                self.command,
                cwd=workdir,
                check=False,
                timeout=self.timeout,
                env=self._task_env(task, plan_number),
                input_text=payload,
            )
        except subprocess.TimeoutExpired:
            return ExecutionResult(success=False, error=f"executor timed out after {self.timeout}s")
        except FileNotFoundError as e:
            return ExecutionResult(success=False, error=f"executor not found: {e}")

        output = ((result.stdout or "") + (result.stderr or ""))[-MAX_OUTPUT_CHARS:]
        if result.returncode == 0:
            return ExecutionResult(success=True, output=output)
        last_line = output.strip().splitlines()[-1] if output.strip() else f"exit code {result.returncode}"
        if result.returncode == BLOCKED_EXIT_CODE:
            return ExecutionResult(success=False, blocked=True, error=last_line, output=output)
        return ExecutionResult(success=False, error=last_line, output=output)
