"""Merge request view and result models."""

from datetime import datetime
from typing import List, Literal

from pydantic import BaseModel, Field

from refinery.fields import decode
from refinery.store.schemas import IssueRecord

MR_TYPE = "merge-request"
DEFAULT_TARGET = "main"
INTEGRATION_PREFIX = "integration/"

DisplayStatus = Literal["ready", "blocked", "failed", "in_progress", "closed"]


def integration_branch(epic: str) -> str:
    """Target branch for an epic: integration/<epic>."""
    return f"{INTEGRATION_PREFIX}{epic}"


class MergeRequest(BaseModel):
    """Merge request: an issue record of type merge-request plus its embedded fields."""

    id: str
    title: str = ""
    type: str = MR_TYPE
    status: str = "open"
    priority: int = 2
    assignee: str | None = None
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None
    seq: int = 0

    branch: str | None = None
    target: str = DEFAULT_TARGET
    source_issue: str | None = None
    worker: str | None = None
    rig: str | None = None
    merge_commit: str | None = None
    close_reason: str | None = None
    error: str | None = None

    dependencies: List[str] = Field(default_factory=list)
    blocked_by: List[str] = Field(default_factory=list, description="Dependencies not yet closed")
    notes: str = ""

    @classmethod
    def from_record(cls, record: IssueRecord, blocked_by: List[str] | None = None) -> "MergeRequest":
        fields, notes = decode(record.description)
        data = fields.model_dump(exclude_none=True) if fields else {}
        if not data.get("target"):
            data["target"] = DEFAULT_TARGET
        return cls(
            id=record.id,
            title=record.title,
            type=record.type,
            status=record.status,
            priority=record.priority,
            assignee=record.assignee,
            created_at=record.created_at,
            updated_at=record.updated_at,
            closed_at=record.closed_at,
            seq=record.seq,
            dependencies=list(record.dependencies),
            blocked_by=list(blocked_by or []),
            notes=notes,
            **data,
        )

    @property
    def is_failed(self) -> bool:
        """Open with a recorded error."""
        return self.status == "open" and bool(self.error)

    @property
    def is_blocked(self) -> bool:
        return self.status == "open" and bool(self.blocked_by)

    @property
    def is_ready(self) -> bool:
        return self.status == "open" and not self.blocked_by and not self.error

    @property
    def display_status(self) -> DisplayStatus:
        if self.status == "closed":
            return "closed"
        if self.status == "in_progress":
            return "in_progress"
        if self.blocked_by:
            return "blocked"
        if self.error:
            return "failed"
        return "ready"

    def queue_key(self) -> tuple[int, datetime, int, str]:
        """Ordering: priority, then creation time, then creation sequence."""
        return (self.priority, self.created_at, self.seq, self.id)

    def to_json(self) -> dict:
        data = self.model_dump(mode="json", exclude_none=True)
        data["display_status"] = self.display_status
        return data


class DependencyInfo(BaseModel):
    """Summary of a dependency or dependent."""

    id: str
    title: str = ""
    status: str = ""
    priority: int = 2
    type: str = ""

    @classmethod
    def from_record(cls, record: IssueRecord) -> "DependencyInfo":
        return cls(id=record.id, title=record.title, status=record.status, priority=record.priority, type=record.type)


class MRStatus(BaseModel):
    """Detailed status: record, what it waits on, what waits on it."""

    mr: MergeRequest
    depends_on: List[DependencyInfo] = Field(default_factory=list)
    blocks: List[DependencyInfo] = Field(default_factory=list)

    def to_json(self) -> dict:
        data = self.mr.to_json()
        data["depends_on"] = [d.model_dump(mode="json") for d in self.depends_on]
        data["blocks"] = [d.model_dump(mode="json") for d in self.blocks]
        return data


class RejectResult(BaseModel):
    """Outcome of a rejection."""

    mr_id: str
    branch: str | None = None
    worker: str | None = None
    source_issue: str | None = None
    notified: bool = False
    notify_error: str | None = None


AttemptOutcome = Literal["merged", "failed", "deferred", "skipped"]


class AttemptResult(BaseModel):
    """Outcome of one merge attempt.

    ``deferred`` means a transient failure (store or VCS timeout); the MR is
    back in the ready set without an error. ``skipped`` means the MR was no
    longer ready when the attempt started.
    """

    mr_id: str
    target: str
    outcome: AttemptOutcome
    merge_commit: str | None = None
    error: str | None = None
    released: List[str] = Field(default_factory=list, description="Dependents that became ready")
