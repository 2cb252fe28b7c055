"""Per-user time tracking settings."""
from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator

from app.models.base import CamelModel


HH_MM = r"^([01]\d|2[0-3]):[0-5]\d$"


class WorkingDay(CamelModel):
    """Working hours for one weekday."""

    start: str = Field(default="09:00", pattern=HH_MM)
    end: str = Field(default="17:00", pattern=HH_MM)
    is_work_day: bool = True


def validate_weekday_keys(value: Optional[dict]) -> Optional[dict]:
    """Weekday keys are "0" (Sunday) through "6" (Saturday)."""
    if value is None:
        return None
    invalid = [key for key in value if key not in {str(day) for day in range(7)}]
    if invalid:
        raise ValueError(f"Invalid weekday keys: {', '.join(sorted(invalid))}")
    return value


def default_working_hours() -> dict[str, WorkingDay]:
    """Monday to Friday, 09:00-17:00."""
    return {
        str(day): WorkingDay(is_work_day=day not in (0, 6))
        for day in range(7)
    }


class TimeTrackingSettings(CamelModel):
    """Time tracking settings, one document per user."""

    user_id: str
    rounding_interval: int = Field(default=15, ge=0)  # minutes, 0 disables
    default_billable_rate: Decimal = Field(default=Decimal("0"), ge=0)
    auto_stop_timer_after_inactivity: int = Field(default=30, ge=0)  # minutes
    reminder_interval: int = Field(default=0, ge=0)  # minutes, 0 disables
    working_hours: dict[str, WorkingDay] = Field(default_factory=default_working_hours)

    @field_validator("working_hours")
    @classmethod
    def weekday_keys(cls, value):
        return validate_weekday_keys(value)


class TimeTrackingSettingsUpdate(CamelModel):
    """Settings update model - all fields optional, user id is not updatable."""

    rounding_interval: Optional[int] = Field(default=None, ge=0)
    default_billable_rate: Optional[Decimal] = Field(default=None, ge=0)
    auto_stop_timer_after_inactivity: Optional[int] = Field(default=None, ge=0)
    reminder_interval: Optional[int] = Field(default=None, ge=0)
    working_hours: Optional[dict[str, WorkingDay]] = None

    @field_validator("working_hours")
    @classmethod
    def weekday_keys(cls, value):
        return validate_weekday_keys(value)


def default_settings(user_id: str) -> TimeTrackingSettings:
    """Settings used for a user who has never saved any."""
    return TimeTrackingSettings(user_id=user_id)
