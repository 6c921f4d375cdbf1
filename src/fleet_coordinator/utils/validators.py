"""Validation for repository slugs and git branch names."""

import re

_OWNER_REPO_RE = re.compile(r"^[a-zA-Z0-9_-]+/[a-zA-Z0-9_.-]+$")
_BRANCH_RE = re.compile(r"^[a-zA-Z0-9/_.-]+$")


def validate_owner_repo(owner_repo: str) -> str:
    """
    Validate an `owner/repo` slug.

    Raises:
        ValueError: If the slug is malformed or tries path traversal
    """
    if not owner_repo:
        raise ValueError("Repository name cannot be empty")
    if not _OWNER_REPO_RE.match(owner_repo):
        raise ValueError(f"Invalid repository format: {owner_repo}. Must be 'owner/repo'")
    if ".." in owner_repo:
        raise ValueError(f"Invalid repository name: {owner_repo}")
    return owner_repo


def validate_branch_name(branch_name: str) -> str:
    """
    Validate a git branch name before it is handed to git.

    Raises:
        ValueError: If the name is empty, too long or contains unsafe sequences
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")
    if not _BRANCH_RE.match(branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")
    if branch_name.startswith(("/", "-")) or branch_name.endswith(("/", ".")):
        raise ValueError(f"Branch name has an invalid prefix or suffix: {branch_name}")
    if ".." in branch_name or "@{" in branch_name:
        raise ValueError("Branch name contains invalid sequence")
    if len(branch_name) > 255:
        raise ValueError("Branch name too long")
    return branch_name
