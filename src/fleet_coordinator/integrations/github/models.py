"""Plain snapshots of GitHub objects.

The coordinator never holds on to PyGithub objects; the client converts them
at the boundary so the rest of the code can be exercised with plain data.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IssueSnapshot(BaseModel):
    number: int
    title: str
    body: str = ""
    state: str = "open"
    labels: List[str] = Field(default_factory=list)
    assignees: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_pull_request: bool = False

    def has_label(self, name: str) -> bool:
        return name in self.labels


class CommentSnapshot(BaseModel):
    id: int = 0
    author: Optional[str] = None
    body: str = ""
    created_at: Optional[datetime] = None
    issue_number: Optional[int] = None


class PullRequestSnapshot(BaseModel):
    number: int
    title: str
    author: Optional[str] = None
    head_ref: str = ""
    draft: bool = False
    created_at: Optional[datetime] = None
    html_url: str = ""
    requested_reviewers: List[str] = Field(default_factory=list)


class ReviewSnapshot(BaseModel):
    user: Optional[str] = None
    state: str
    body: str = ""
    submitted_at: Optional[datetime] = None
