"""Shared utility functions for the fleet coordinator."""

from .atomic_io import (
    append_jsonl,
    atomic_write_json,
    atomic_write_jsonl,
    atomic_write_text,
)
from .error_handling import ErrorContext, log_and_ignore, safe_call
from .stream_parser import parse_jsonl_to_models
from .subprocess_utils import (
    SubprocessError,
    check_command_exists,
    run_command,
    run_git_command,
    run_with_retry,
)
from .validators import validate_branch_name, validate_owner_repo

__all__ = [
    # Atomic I/O
    "append_jsonl",
    "atomic_write_json",
    "atomic_write_jsonl",
    "atomic_write_text",
    # Error handling
    "ErrorContext",
    "log_and_ignore",
    "safe_call",
    # Stream parsing
    "parse_jsonl_to_models",
    # Subprocess utilities
    "SubprocessError",
    "check_command_exists",
    "run_command",
    "run_git_command",
    "run_with_retry",
    # Validators
    "validate_branch_name",
    "validate_owner_repo",
]
