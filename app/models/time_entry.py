"""Time entry model definitions."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field, field_validator

from app.models.base import CamelModel


# Largest page a single listing query may request
MAX_PAGE_LIMIT = 10000


class TimeEntrySource(str, Enum):
    """Where a time entry came from."""

    TIMER = "timer"
    MANUAL = "manual"


def normalize_tags(tags: Optional[list[str]]) -> Optional[list[str]]:
    """Tags are a set; keep them de-duplicated and sorted."""
    if tags is None:
        return None
    return sorted({tag.strip() for tag in tags if tag and tag.strip()})


class TimeEntry(CamelModel):
    """Full time entry model with database fields."""

    id: str = Field(alias="_id", serialization_alias="id")
    task_id: str
    project_id: str
    user_id: str
    description: str = ""
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: int = Field(default=0, ge=0)
    billable: bool = True
    billable_rate: Optional[Decimal] = None
    invoice_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    source: TimeEntrySource
    version: int = Field(default=1, ge=1)
    created_at: datetime
    updated_at: datetime

    @field_validator("tags")
    @classmethod
    def tags_as_set(cls, value):
        return normalize_tags(value)

    @property
    def is_running(self) -> bool:
        """True while no end time has been recorded."""
        return self.end_time is None

    @property
    def is_invoiced(self) -> bool:
        """Invoiced entries are locked except for description and tags."""
        return self.invoice_id is not None


class TimerStart(CamelModel):
    """Request model for starting a timer."""

    task_id: str
    description: str = ""
    billable: bool = True
    tags: list[str] = Field(default_factory=list)


class TimerStop(CamelModel):
    """Request model for stopping a timer."""

    end_time: Optional[datetime] = None


class TimeEntryCreate(CamelModel):
    """Manual time entry creation model."""

    task_id: str
    project_id: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    duration: Optional[int] = Field(default=None, ge=0)
    billable: bool = True
    billable_rate: Optional[Decimal] = Field(default=None, ge=0)
    tags: list[str] = Field(default_factory=list)


class TimeEntryUpdate(CamelModel):
    """
    Time entry update model - all fields optional.

    Only fields explicitly present in the request take part in the
    update. ``version``, when given, must match the stored version.
    """

    task_id: Optional[str] = None
    project_id: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    billable: Optional[bool] = None
    billable_rate: Optional[Decimal] = Field(default=None, ge=0)
    tags: Optional[list[str]] = None
    version: Optional[int] = Field(default=None, ge=1)

    @field_validator("tags")
    @classmethod
    def tags_as_set(cls, value):
        return normalize_tags(value)


class TimeEntryFilters(CamelModel):
    """Filters and pagination for listing a user's time entries."""

    project_id: Optional[str] = None
    task_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    billable: Optional[bool] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=MAX_PAGE_LIMIT)


class TimeEntryPage(CamelModel):
    """One page of time entries."""

    entries: list[TimeEntry]
    total: int
    page: int
    limit: int
