"""Generic issue record as exchanged with an issue store."""

from datetime import UTC, datetime
from typing import Annotated, List

from pydantic import BaseModel, BeforeValidator, Field


def _ensure_datetime(value: datetime | str | int | None) -> datetime | None:
    """Coerce ISO string or Unix timestamp to an aware datetime (UTC when naive)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, int):
        dt = datetime.fromtimestamp(value, tz=UTC)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


Timestamp = Annotated[datetime, BeforeValidator(_ensure_datetime)]
OptionalTimestamp = Annotated[datetime | None, BeforeValidator(_ensure_datetime)]


class IssueRecord(BaseModel):
    """Issue record: id, type, status, priority, description and dependency edges."""

    id: str = Field(..., description="Store-assigned id, e.g. gt-mr-k3x9a")
    title: str = Field(default="", description="Issue title")
    type: str = Field(default="task", description="Issue type, e.g. task, bug, merge-request")
    status: str = Field(default="open", description="open, in_progress or closed")
    priority: int = Field(default=2, ge=0, le=4, description="0 (most urgent) .. 4")
    description: str = Field(default="", description="Free-text body")
    assignee: str | None = Field(default=None, description="Assignee login")
    created_at: Timestamp = Field(..., description="When the record was created")
    updated_at: Timestamp = Field(..., description="Last update")
    closed_at: OptionalTimestamp = Field(default=None, description="When the record was closed")
    close_reason: str | None = Field(default=None, description="Reason given on close")
    dependencies: List[str] = Field(default_factory=list, description="Ids this record waits on")
    seq: int = Field(default=0, ge=0, description="Creation sequence number within the store")

    model_config = {"extra": "ignore", "populate_by_name": True}
