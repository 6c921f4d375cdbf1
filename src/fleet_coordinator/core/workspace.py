"""Registry of watched workspaces (repositories) and their lifecycle state."""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from ..utils.atomic_io import atomic_write_json
from ..utils.validators import validate_owner_repo

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "watched_workspaces.json"

_GITHUB_URL_RE = re.compile(
    r"^(?:https?://)?(?:www\.)?github\.com/([^/\s]+)/([^/\s#?]+?)(?:\.git)?(?:[/#?].*)?$"
)


def parse_github_workspace_url(url: str) -> Tuple[str, str]:
    """Return (owner, repo) for a github.com URL or an `owner/repo` slug.

    Raises:
        ValueError: If the string names no repository
    """
    url = url.strip()
    match = _GITHUB_URL_RE.match(url)
    slug = f"{match.group(1)}/{match.group(2)}" if match else url
    owner, repo = validate_owner_repo(slug).split("/")
    return owner, repo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkspaceRecord(BaseModel):
    owner: str
    repo: str
    url: str
    discovered_at: datetime = Field(default_factory=_utcnow)
    discovered_in_thread: Optional[str] = None
    last_polled: Optional[datetime] = None
    active_plan_issues: List[int] = Field(default_factory=list)
    last_plan_synthesis_attempt: Optional[datetime] = None
    last_health_check_attempt: Optional[datetime] = None
    finished_issue_number: Optional[int] = None
    # "<plan>#<task>" -> first time the task was seen held by an assignee
    stuck_tasks: Dict[str, datetime] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def is_finished(self) -> bool:
        return self.finished_issue_number is not None


class WorkspaceRegistry:
    """JSON-file backed registry, rewritten atomically on every change."""

    def __init__(self, state_dir: Path, logger_instance: Optional[logging.Logger] = None):
        self.path = Path(state_dir) / REGISTRY_FILENAME
        self._log = logger_instance or logger
        self._records: Optional[Dict[str, WorkspaceRecord]] = None

    def _load(self) -> Dict[str, WorkspaceRecord]:
        if self._records is not None:
            return self._records
        records: Dict[str, WorkspaceRecord] = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text())
            except (json.JSONDecodeError, OSError) as e:
                self._log.error(f"Could not read workspace registry {self.path}: {e}")
                raw = {}
            for key, data in raw.items():
                try:
                    records[key] = WorkspaceRecord.model_validate(data)
                except ValidationError as e:
                    self._log.warning(f"Dropping invalid workspace record {key}: {e}")
        self._records = records
        return records

    def save(self) -> None:
        records = self._load()
        atomic_write_json(
            self.path, {key: r.model_dump(mode="json") for key, r in records.items()}
        )

    def reload(self) -> None:
        self._records = None

    def add(self, url: str, thread: Optional[str] = None) -> WorkspaceRecord:
        """Start watching a repository. Re-adding an existing one is a no-op."""
        owner, repo = parse_github_workspace_url(url)
        records = self._load()
        key = f"{owner}/{repo}"
        if key in records:
            return records[key]
        record = WorkspaceRecord(
            owner=owner, repo=repo, url=f"https://github.com/{owner}/{repo}",
            discovered_in_thread=thread,
        )
        records[key] = record
        self.save()
        self._log.info(f"Watching workspace {key}")
        return record

    def remove(self, owner: str, repo: str) -> bool:
        records = self._load()
        if records.pop(f"{owner}/{repo}", None) is None:
            return False
        self.save()
        self._log.info(f"Stopped watching workspace {owner}/{repo}")
        return True

    def get(self, owner: str, repo: str) -> Optional[WorkspaceRecord]:
        return self._load().get(f"{owner}/{repo}")

    def list(self) -> List[WorkspaceRecord]:
        return list(self._load().values())

    def update(self, record: WorkspaceRecord) -> None:
        self._load()[record.key] = record
        self.save()
