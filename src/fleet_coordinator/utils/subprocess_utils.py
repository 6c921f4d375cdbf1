"""Subprocess helpers for git, test runners and executor commands."""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Raised when a checked command exits non-zero."""

    def __init__(self, cmd: str, returncode: int, stderr: str, stdout: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(
            f"Command failed with exit code {returncode}: {cmd}\nstderr: {stderr}"
        )


def run_command(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command and capture its text output.

    Args:
        cmd: argv list (or a string, run without a shell)
        cwd: Working directory
        check: Raise SubprocessError on non-zero exit
        timeout: Seconds before subprocess.TimeoutExpired is raised
        env: Full environment for the child
        input_text: Data written to the child's stdin

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and the command fails
        subprocess.TimeoutExpired: If timeout exceeded
        FileNotFoundError: If the executable does not exist
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            input=input_text,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {cmd}")
        raise

    if check and result.returncode != 0:
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        raise SubprocessError(
            cmd=cmd_str,
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
        )
    return result


def run_git_command(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess:
    """Run `git <args>` with a bounded timeout."""
    try:
        return run_command(["git"] + args, cwd=cwd, check=check, timeout=timeout)
    except SubprocessError:
        logger.error(f"Git command failed in {cwd}: git {' '.join(args)}")
        raise


def run_with_retry(
    cmd: List[str],
    *,
    max_retries: int = 3,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Retry a checked command; for network-bound git operations like push and clone."""
    last_error: Optional[SubprocessError] = None
    for attempt in range(max_retries):
        try:
            return run_command(cmd, cwd=cwd, check=True, timeout=timeout)
        except SubprocessError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Command failed (attempt {attempt + 1}/{max_retries}), retrying: {' '.join(cmd)}"
                )

    logger.error(f"Command failed after {max_retries} attempts: {' '.join(cmd)}")
    raise last_error


def check_command_exists(command: str) -> bool:
    """True if `command` resolves on PATH."""
    return shutil.which(command) is not None
