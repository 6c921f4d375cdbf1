"""Durable queue of commitments: follow-through the agent has promised.

While a commitment for a thread is unresolved the agent should not promise
anything new in that thread. Two sweeps keep the queue from blocking forever:
anything unresolved past an absolute age is abandoned, and anything stuck
in_progress past a short timeout is failed back to retryable.
"""

import hashlib
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .jsonl_store import JsonlStore

logger = logging.getLogger(__name__)

QUEUE_FILENAME = "pending_commitments.jsonl"
AUDIT_LOG = Path("logs") / "commitment-queue.log"
MAX_ATTEMPTS = 3
STALE_AFTER_SECONDS = 24 * 60 * 60
IN_PROGRESS_TIMEOUT_SECONDS = 10 * 60


class CommitmentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class CommitmentType(str, Enum):
    CREATE_ISSUE = "create_issue"
    CREATE_PLAN = "create_plan"
    COMMENT_ISSUE = "comment_issue"


_RESOLVED = {CommitmentStatus.COMPLETED.value, CommitmentStatus.ABANDONED.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def commitment_hash(thread_uri: str, description: str) -> str:
    normalized = re.sub(r"\s+", " ", description.lower().strip())
    return hashlib.sha256(f"{thread_uri}:{normalized}".encode()).hexdigest()[:16]


class Commitment(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: f"commitment-{uuid.uuid4().hex[:12]}")
    created_at: datetime = Field(default_factory=_utcnow)
    description: str
    type: CommitmentType
    source_thread_uri: str
    source_reply_text: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)
    hash: str
    status: CommitmentStatus = CommitmentStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class CommitmentQueue:
    def __init__(
        self,
        state_dir: Path,
        max_attempts: int = MAX_ATTEMPTS,
        stale_after: int = STALE_AFTER_SECONDS,
        in_progress_timeout: int = IN_PROGRESS_TIMEOUT_SECONDS,
        retention_days: int = 7,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.state_dir = Path(state_dir)
        self.max_attempts = max_attempts
        self.stale_after = timedelta(seconds=stale_after)
        self.in_progress_timeout = timedelta(seconds=in_progress_timeout)
        self._now = now
        self._store: JsonlStore[Commitment] = JsonlStore(
            self.state_dir / QUEUE_FILENAME,
            Commitment,
            audit_log_path=self.state_dir / AUDIT_LOG,
            retention_days=retention_days,
            is_prunable=lambda c: c.status in _RESOLVED,
            now=now,
        )

    def _all(self) -> List[Commitment]:
        return self._store.load()

    def clear_cache(self) -> None:
        self._store.clear_cache()

    def get(self, commitment_id: str) -> Optional[Commitment]:
        for c in self._all():
            if c.id == commitment_id:
                return c
        return None

    def _retryable(self, c: Commitment) -> bool:
        return c.status == CommitmentStatus.FAILED.value and c.attempt_count < self.max_attempts

    def enqueue(
        self,
        description: str,
        type: CommitmentType,
        source_thread_uri: str,
        params: Optional[Dict[str, Any]] = None,
        source_reply_text: str = "",
    ) -> Commitment:
        """Record a promise; an unresolved identical promise in the same thread is returned instead."""
        digest = commitment_hash(source_thread_uri, description)
        for existing in self._all():
            if existing.hash == digest and existing.status not in _RESOLVED:
                self._store.audit("duplicate_rejected", existing.id, source_thread_uri)
                return existing

        commitment = Commitment(
            created_at=self._now(),
            description=description,
            type=type,
            source_thread_uri=source_thread_uri,
            source_reply_text=source_reply_text,
            params=params or {},
            hash=digest,
        )
        self._all().append(commitment)
        self._store.save()
        self._store.audit("enqueued", commitment.id, f"{commitment.type} {source_thread_uri}")
        logger.info(f"Commitment {commitment.id} recorded: {description[:60]}")
        return commitment

    def has_pending(self, thread_uri: Optional[str] = None) -> bool:
        """True while an unresolved commitment blocks new promises (in one thread, or anywhere)."""
        for c in self._all():
            if thread_uri is not None and c.source_thread_uri != thread_uri:
                continue
            if c.status in (CommitmentStatus.PENDING.value, CommitmentStatus.IN_PROGRESS.value):
                return True
            if self._retryable(c):
                return True
        return False

    def get_pending(self) -> List[Commitment]:
        """Commitments ready to work on, oldest first."""
        ready = [
            c for c in self._all()
            if c.status == CommitmentStatus.PENDING.value or self._retryable(c)
        ]
        return sorted(ready, key=lambda c: c.created_at)

    def mark_in_progress(self, commitment_id: str) -> Optional[Commitment]:
        c = self.get(commitment_id)
        if c is None:
            return None
        c.status = CommitmentStatus.IN_PROGRESS.value
        c.last_attempt_at = self._now()
        self._store.save()
        self._store.audit("in_progress", c.id)
        return c

    def mark_completed(self, commitment_id: str, result: Optional[Dict[str, Any]] = None) -> Optional[Commitment]:
        c = self.get(commitment_id)
        if c is None:
            return None
        c.status = CommitmentStatus.COMPLETED.value
        c.attempt_count += 1
        c.last_attempt_at = self._now()
        c.error = None
        c.result = result
        self._store.save()
        self._store.audit("completed", c.id)
        logger.info(f"Commitment {c.id} fulfilled")
        return c

    def mark_failed(self, commitment_id: str, error: str) -> Optional[Commitment]:
        c = self.get(commitment_id)
        if c is None:
            return None
        c.attempt_count += 1
        c.last_attempt_at = self._now()
        c.error = error
        self._fail_or_abandon(c)
        self._store.save()
        return c

    def _fail_or_abandon(self, c: Commitment) -> None:
        if c.attempt_count >= self.max_attempts:
            c.status = CommitmentStatus.ABANDONED.value
            self._store.audit("abandoned", c.id, f"max attempts: {c.error}")
            logger.warning(f"Commitment {c.id} abandoned after {c.attempt_count} attempts: {c.error}")
        else:
            c.status = CommitmentStatus.FAILED.value
            self._store.audit("failed", c.id, c.error or "")

    def abandon_stale(self) -> int:
        """Abandon anything unresolved past the age ceiling, whatever its attempt count."""
        cutoff = self._now() - self.stale_after
        unresolved = {
            CommitmentStatus.PENDING.value,
            CommitmentStatus.FAILED.value,
            CommitmentStatus.IN_PROGRESS.value,
        }
        count = 0
        for c in self._all():
            if c.status in unresolved and c.created_at < cutoff:
                c.status = CommitmentStatus.ABANDONED.value
                c.error = "Stale: exceeded 24h threshold"
                self._store.audit("abandoned", c.id, c.error)
                count += 1
        if count:
            self._store.save()
            logger.warning(f"Abandoned {count} stale commitments")
        return count

    def reset_stuck_in_progress(self) -> int:
        """Fail in_progress entries whose worker has gone quiet, so they can be retried."""
        cutoff = self._now() - self.in_progress_timeout
        count = 0
        for c in self._all():
            if c.status != CommitmentStatus.IN_PROGRESS.value:
                continue
            if c.last_attempt_at is not None and c.last_attempt_at >= cutoff:
                continue
            c.attempt_count += 1
            c.error = f"Timed out in progress after {int(self.in_progress_timeout.total_seconds() // 60)} minutes"
            self._fail_or_abandon(c)
            count += 1
        if count:
            self._store.save()
            logger.warning(f"Reset {count} commitments stuck in progress")
        return count

    def stats(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in CommitmentStatus}
        for c in self._all():
            counts[CommitmentStatus(c.status).value] += 1
        return counts
