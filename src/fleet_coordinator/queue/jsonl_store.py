"""JSONL-backed record store shared by the action and commitment queues.

The whole file is loaded once and cached; every mutation rewrites it
atomically under a file lock. Terminal records older than the retention
window are pruned on load. Every state change is also appended to a
JSON-lines audit log.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generic, List, Optional, TypeVar

from pydantic import BaseModel

from ..utils.atomic_io import append_jsonl, atomic_write_jsonl
from ..utils.stream_parser import parse_jsonl_to_models
from .locks import QueueFileLock

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class JsonlStore(Generic[T]):
    def __init__(
        self,
        path: Path,
        model_class: type,
        audit_log_path: Optional[Path] = None,
        retention_days: int = 7,
        is_prunable: Optional[Callable[[T], bool]] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.path = Path(path)
        self.model_class = model_class
        self.audit_log_path = Path(audit_log_path) if audit_log_path else None
        self.retention = timedelta(days=retention_days)
        self._is_prunable = is_prunable
        self._now = now
        self._cache: Optional[List[T]] = None

    def load(self) -> List[T]:
        if self._cache is not None:
            return self._cache
        entries: List[T] = []
        if self.path.exists():
            entries = parse_jsonl_to_models(self.path.read_text(), self.model_class)
        if self._is_prunable is not None:
            cutoff = self._now() - self.retention
            kept = [e for e in entries if not (self._is_prunable(e) and e.created_at < cutoff)]
            if len(kept) != len(entries):
                logger.info(f"Pruned {len(entries) - len(kept)} old entries from {self.path.name}")
                self._cache = kept
                self.save()
            entries = kept
        self._cache = entries
        return entries

    def save(self) -> None:
        with QueueFileLock(self.path):
            atomic_write_jsonl(self.path, self._cache or [])

    def clear_cache(self) -> None:
        self._cache = None

    def audit(self, event: str, entry_id: str, details: str = "") -> None:
        if self.audit_log_path is None:
            return
        record = {"ts": self._now().isoformat(), "event": event, "id": entry_id}
        if details:
            record["details"] = details
        try:
            append_jsonl(self.audit_log_path, record)
        except OSError as e:
            logger.warning(f"Could not write audit log {self.audit_log_path}: {e}")
