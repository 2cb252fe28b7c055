"""Time tracking summary model definitions."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field

from app.models.base import CamelModel
from app.models.time_entry import TimeEntry


class SummaryGroupBy(str, Enum):
    """How summary entries are grouped."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    PROJECT = "project"
    TASK = "task"


class SummaryOptions(CamelModel):
    """Range, filters and grouping for a summary request."""

    start_date: datetime
    end_date: datetime
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    group_by: SummaryGroupBy = SummaryGroupBy.DAY


class TimeTrackingSummary(CamelModel):
    """Aggregated durations and amounts for one group of entries."""

    user_id: str
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    period_start: datetime
    period_end: datetime
    total_duration: int = 0
    billable_duration: int = 0
    non_billable_duration: int = 0
    billable_amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    entries: list[TimeEntry] = Field(default_factory=list)
