"""Durable queue of outbound actions (comments the agent owes someone).

If a comment cannot be delivered right now (rate limit, outage) it is
deferred with exponential backoff instead of being lost. Identical text for
the same target is only ever queued once while it is still undelivered.
"""

import hashlib
import logging
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..safeguards.retry_handler import RetryHandler
from .jsonl_store import JsonlStore

logger = logging.getLogger(__name__)

QUEUE_FILENAME = "pending_actions.jsonl"
AUDIT_LOG = Path("logs") / "action-queue.log"
MAX_ATTEMPTS = 5


class ActionStatus(str, Enum):
    PENDING = "pending"
    DEFERRED = "deferred"
    SENT = "sent"
    FAILED = "failed"
    ABANDONED = "abandoned"


class ActionPriority(str, Enum):
    OWNER = "owner"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER = {
    ActionPriority.OWNER.value: 0,
    ActionPriority.HIGH.value: 1,
    ActionPriority.NORMAL.value: 2,
    ActionPriority.LOW.value: 3,
}

_TERMINAL = {ActionStatus.SENT.value, ActionStatus.ABANDONED.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower().strip())


def text_hash(target_uri: str, text: str) -> str:
    return hashlib.sha256(f"{target_uri}:{normalize_text(text)}".encode()).hexdigest()[:16]


class ActionTarget(BaseModel):
    """Where the action lands: `owner/repo#number` for an issue or PR comment."""
    uri: str
    root_uri: Optional[str] = None
    author: Optional[str] = None


class QueuedAction(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: f"action-{uuid.uuid4().hex[:12]}")
    created_at: datetime = Field(default_factory=_utcnow)
    target: ActionTarget
    text: str
    text_hash: str
    priority: ActionPriority = ActionPriority.NORMAL
    status: ActionStatus = ActionStatus.PENDING
    last_attempt_at: Optional[datetime] = None
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    error: Optional[str] = None
    thread_root_uri: Optional[str] = None


class ActionQueue:
    def __init__(
        self,
        state_dir: Path,
        retry_handler: Optional[RetryHandler] = None,
        retention_days: int = 7,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.state_dir = Path(state_dir)
        self.retry = retry_handler or RetryHandler(max_attempts=MAX_ATTEMPTS)
        self._now = now
        self._store: JsonlStore[QueuedAction] = JsonlStore(
            self.state_dir / QUEUE_FILENAME,
            QueuedAction,
            audit_log_path=self.state_dir / AUDIT_LOG,
            retention_days=retention_days,
            is_prunable=lambda a: a.status in _TERMINAL,
            now=now,
        )

    def _all(self) -> List[QueuedAction]:
        return self._store.load()

    def clear_cache(self) -> None:
        self._store.clear_cache()

    def find_duplicate(self, target_uri: str, text: str) -> Optional[QueuedAction]:
        digest = text_hash(target_uri, text)
        for action in self._all():
            if action.text_hash == digest and action.target.uri == target_uri and action.status not in _TERMINAL:
                return action
        return None

    def enqueue(
        self,
        target: ActionTarget,
        text: str,
        priority: ActionPriority = ActionPriority.NORMAL,
        thread_root_uri: Optional[str] = None,
    ) -> QueuedAction:
        """Queue an action; an undelivered duplicate is returned instead of a new entry."""
        existing = self.find_duplicate(target.uri, text)
        if existing is not None:
            self._store.audit("duplicate_rejected", existing.id, target.uri)
            logger.debug(f"Duplicate action for {target.uri}, keeping {existing.id}")
            return existing

        action = QueuedAction(
            created_at=self._now(),
            target=target,
            text=text,
            text_hash=text_hash(target.uri, text),
            priority=priority,
            thread_root_uri=thread_root_uri or target.root_uri,
        )
        self._all().append(action)
        self._store.save()
        self._store.audit("enqueued", action.id, f"{action.priority} {target.uri}")
        logger.info(f"Action {action.id} enqueued for {target.uri} ({action.priority})")
        return action

    def defer(self, action_id: str, reason: str) -> Optional[QueuedAction]:
        """Record a failed delivery; schedules a retry or fails the action at max attempts."""
        action = self.get(action_id)
        if action is None:
            logger.warning(f"Attempted to defer unknown action {action_id}")
            return None
        now = self._now()
        action.last_attempt_at = now
        action.attempt_count += 1
        action.error = reason
        if not self.retry.should_retry(action.attempt_count):
            action.status = ActionStatus.FAILED.value
            action.next_retry_at = None
            self._store.audit("max_attempts_reached", action.id, reason)
            logger.warning(f"Action {action.id} failed after {action.attempt_count} attempts: {reason}")
        else:
            action.status = ActionStatus.DEFERRED.value
            action.next_retry_at = self.retry.next_retry_at(action.attempt_count, now)
            self._store.audit("deferred", action.id, f"attempt {action.attempt_count}: {reason}")
            logger.info(f"Action {action.id} deferred until {action.next_retry_at.isoformat()}")
        self._store.save()
        return action

    def mark_sent(self, action_id: str) -> Optional[QueuedAction]:
        action = self.get(action_id)
        if action is None:
            logger.warning(f"Attempted to mark unknown action {action_id} as sent")
            return None
        action.status = ActionStatus.SENT.value
        action.last_attempt_at = self._now()
        action.attempt_count += 1
        action.error = None
        action.next_retry_at = None
        self._store.save()
        self._store.audit("sent", action.id)
        return action

    def abandon(self, action_id: str, reason: str) -> Optional[QueuedAction]:
        action = self.get(action_id)
        if action is None:
            return None
        action.status = ActionStatus.ABANDONED.value
        action.error = reason
        action.next_retry_at = None
        self._store.save()
        self._store.audit("abandoned", action.id, reason)
        logger.info(f"Action {action.id} abandoned: {reason}")
        return action

    def get_retryable(self) -> List[QueuedAction]:
        """Pending actions plus deferred ones whose retry time has come, by priority then age."""
        now = self._now()
        ready = [
            a for a in self._all()
            if a.status == ActionStatus.PENDING.value
            or (
                a.status == ActionStatus.DEFERRED.value
                and (a.next_retry_at is None or a.next_retry_at <= now)
            )
        ]
        return sorted(ready, key=lambda a: (PRIORITY_ORDER[ActionPriority(a.priority).value], a.created_at))

    def get_failed(self) -> List[QueuedAction]:
        return [a for a in self._all() if a.status == ActionStatus.FAILED.value]

    def stats(self) -> Dict[str, object]:
        actions = self._all()
        waiting = [
            a for a in actions
            if a.status in (ActionStatus.PENDING.value, ActionStatus.DEFERRED.value)
        ]
        oldest = min((a.created_at for a in waiting), default=None)
        return {
            "pending": len(waiting),
            "deferred": sum(1 for a in actions if a.status == ActionStatus.DEFERRED.value),
            "failed": sum(1 for a in actions if a.status == ActionStatus.FAILED.value),
            "total": len(actions),
            "oldest_pending": oldest.isoformat() if oldest else None,
        }

    def group_by_thread(self) -> Dict[str, List[QueuedAction]]:
        groups: Dict[str, List[QueuedAction]] = {}
        for action in self._all():
            if action.status in _TERMINAL:
                continue
            key = action.thread_root_uri or action.target.root_uri or action.target.uri
            groups.setdefault(key, []).append(action)
        return groups

    def get(self, action_id: str) -> Optional[QueuedAction]:
        for action in self._all():
            if action.id == action_id:
                return action
        return None

    def remove(self, action_id: str) -> bool:
        actions = self._all()
        for i, action in enumerate(actions):
            if action.id == action_id:
                del actions[i]
                self._store.save()
                self._store.audit("removed", action_id)
                return True
        return False
