"""Time entry service - business logic for time tracking."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from app.errors import ConcurrencyError, NotFoundError, PermissionDeniedError, ValidationError
from app.models.settings import (
    TimeTrackingSettings,
    TimeTrackingSettingsUpdate,
    default_settings,
)
from app.models.summary import SummaryOptions, TimeTrackingSummary
from app.models.time_entry import (
    MAX_PAGE_LIMIT,
    TimeEntry,
    TimeEntryFilters,
    TimeEntryPage,
    TimeEntrySource,
    TimeEntryUpdate,
    normalize_tags,
)
from app.repositories.task_repository import TaskRepository
from app.repositories.time_entry_repository import ACTIVE_TIMER_MESSAGE, TimeEntryRepository
from app.services.summary import build_summaries
from app.utils.retry import linear_backoff, with_retry
from app.utils.time import (
    apply_time_rounding,
    calculate_duration_seconds,
    to_naive_utc,
    utcnow,
)


T = TypeVar("T")

# The only fields an invoiced entry still accepts
INVOICE_MUTABLE_FIELDS = frozenset({"description", "tags"})

NON_NULLABLE_FIELDS = frozenset(
    {"task_id", "project_id", "description", "start_time", "end_time", "billable", "tags"}
)


def field_label(name: str) -> str:
    """Public (JSON) name of a TimeEntryUpdate field."""
    return TimeEntryUpdate.model_fields[name].alias or name


class TimeEntryService:
    """Service for handling time tracking operations."""

    def __init__(
        self,
        time_entries: TimeEntryRepository,
        tasks: TaskRepository,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        attempt_timeout: Optional[float] = None,
        currency: str = "USD",
        summary_limit: int = 10000,
    ):
        """Initialize service with its repositories and retry policy."""
        if not 1 <= summary_limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"summary_limit must be between 1 and {MAX_PAGE_LIMIT}")

        self.time_entries = time_entries
        self.tasks = tasks
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.attempt_timeout = attempt_timeout
        self.currency = currency
        self.summary_limit = summary_limit

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            operation,
            max_attempts=self.max_attempts,
            backoff=linear_backoff(self.retry_base_delay),
            attempt_timeout=self.attempt_timeout,
        )

    async def _get_owned_entry(self, user_id: str, entry_id: str, action: str) -> TimeEntry:
        """
        Fetch an entry and check the caller owns it.

        Raises:
            NotFoundError: If the entry does not exist
            PermissionDeniedError: If it belongs to someone else
        """
        entry = await self.time_entries.get_time_entry(entry_id)

        if entry is None:
            raise NotFoundError("Time entry not found")

        if entry.user_id != user_id:
            raise PermissionDeniedError(
                f"You do not have permission to {action} this time entry"
            )

        return entry

    async def _resolve_billable_rate(
        self,
        user_id: str,
        project_id: str,
        settings: Optional[TimeTrackingSettings] = None,
    ) -> Optional[Decimal]:
        """Project rate for the user, else the user's default rate if set."""
        rate = await self.time_entries.get_billable_rate(user_id, project_id)
        if rate is not None:
            return rate

        if settings is None:
            settings = await self.get_user_settings(user_id)
        if settings.default_billable_rate > 0:
            return settings.default_billable_rate
        return None

    async def start_timer(
        self,
        user_id: str,
        task_id: str,
        description: str = "",
        billable: bool = True,
        tags: Iterable[str] = (),
    ) -> TimeEntry:
        """
        Start a new timer.

        Args:
            user_id: User ID
            task_id: Task to track time against
            description: Optional description
            billable: Whether the time is billable
            tags: Labels for the entry

        Returns:
            Created, running time entry

        Raises:
            ValidationError: If ids are missing or a timer is already running
            NotFoundError: If the task doesn't exist
        """
        if not user_id or not task_id:
            raise ValidationError("Missing required fields")

        async def attempt() -> TimeEntry:
            # Storage enforces this too; the read gives a clean error first
            running_timer = await self.get_current_timer(user_id)
            if running_timer:
                raise ValidationError(ACTIVE_TIMER_MESSAGE)

            task = await self.tasks.get_task(task_id)
            if not task:
                raise NotFoundError("Task not found")

            billable_rate = await self._resolve_billable_rate(user_id, task.project_id)

            now = utcnow()
            return await self.time_entries.create_time_entry({
                "task_id": task_id,
                "project_id": task.project_id,
                "user_id": user_id,
                "description": description or "",
                "start_time": now,
                "end_time": None,
                "duration": 0,
                "billable": billable,
                "billable_rate": billable_rate,
                "invoice_id": None,
                "tags": normalize_tags(list(tags)),
                "source": TimeEntrySource.TIMER.value,
                "version": 1,
                "created_at": now,
                "updated_at": now,
            })

        return await self._with_retry(attempt)

    async def stop_timer(
        self,
        user_id: str,
        time_entry_id: str,
        end_time: Optional[datetime] = None,
    ) -> TimeEntry:
        """
        Stop a running timer.

        Args:
            user_id: User ID
            time_entry_id: Running time entry ID
            end_time: Optional end time (defaults to now)

        Returns:
            Updated time entry with end_time and rounded duration

        Raises:
            NotFoundError: If the entry doesn't exist
            PermissionDeniedError: If the entry belongs to another user
            ValidationError: If already stopped or the duration is not positive
            ConcurrencyError: If the entry changed while stopping
        """
        entry = await self._get_owned_entry(user_id, time_entry_id, "stop")

        if not entry.is_running:
            raise ValidationError("This timer is already stopped")
        if entry.is_invoiced:
            raise ValidationError("Cannot stop a time entry that has been invoiced")

        end_time = to_naive_utc(end_time) if end_time is not None else utcnow()
        duration = calculate_duration_seconds(entry.start_time, end_time)
        if duration <= 0:
            raise ValidationError(
                f"Duration must be positive (got {duration}s); "
                "end time must be after start time"
            )

        settings = await self.get_user_settings(user_id)

        update_fields: dict[str, Any] = {
            "end_time": end_time,
            "duration": apply_time_rounding(duration, settings.rounding_interval),
            "updated_at": utcnow(),
        }

        # Snapshot a rate now if none was known at start
        if entry.billable and entry.billable_rate is None:
            billable_rate = await self._resolve_billable_rate(
                user_id, entry.project_id, settings
            )
            if billable_rate is not None:
                update_fields["billable_rate"] = billable_rate

        return await self.time_entries.update_time_entry(
            entry.id, update_fields, expected_version=entry.version
        )

    async def create_manual_entry(
        self,
        user_id: str,
        task_id: str,
        project_id: str,
        description: str,
        start_time: datetime,
        end_time: datetime,
        duration: Optional[int] = None,
        billable: bool = True,
        billable_rate: Optional[Decimal] = None,
        tags: Iterable[str] = (),
    ) -> TimeEntry:
        """
        Create a manual (already finished) time entry.

        Duration defaults to the elapsed time between start and end and is
        always rounded to the user's rounding interval.

        Raises:
            ValidationError: On missing fields, end not after start, a
                negative duration or a task outside the project
        """
        if not user_id or not task_id or not project_id or start_time is None or end_time is None:
            raise ValidationError("Missing required fields")

        start_time = to_naive_utc(start_time)
        end_time = to_naive_utc(end_time)

        if end_time <= start_time:
            raise ValidationError("End time must be after start time")
        if duration is not None and duration < 0:
            raise ValidationError("Duration cannot be negative")
        if billable_rate is not None and billable_rate < 0:
            raise ValidationError("Billable rate cannot be negative")

        async def attempt() -> TimeEntry:
            task = await self.tasks.get_task(task_id)
            if not task or task.project_id != project_id:
                raise ValidationError("Invalid task or project")

            # An explicit 0 counts as not given
            raw_duration = duration
            if not raw_duration:
                raw_duration = calculate_duration_seconds(start_time, end_time)

            settings = await self.get_user_settings(user_id)

            rate = billable_rate
            if billable and rate is None:
                rate = await self._resolve_billable_rate(user_id, project_id, settings)

            now = utcnow()
            return await self.time_entries.create_time_entry({
                "task_id": task_id,
                "project_id": project_id,
                "user_id": user_id,
                "description": description or "",
                "start_time": start_time,
                "end_time": end_time,
                "duration": apply_time_rounding(raw_duration, settings.rounding_interval),
                "billable": billable,
                "billable_rate": rate,
                "invoice_id": None,
                "tags": normalize_tags(list(tags)),
                "source": TimeEntrySource.MANUAL.value,
                "version": 1,
                "created_at": now,
                "updated_at": now,
            })

        return await self._with_retry(attempt)

    async def update_time_entry(
        self,
        user_id: str,
        time_entry_id: str,
        update: TimeEntryUpdate,
    ) -> TimeEntry:
        """
        Update a time entry.

        Only fields explicitly set on ``update`` are applied. The write is
        conditioned on the version read here (or the one the caller sent),
        so a concurrent change surfaces as ConcurrencyError.

        Raises:
            NotFoundError: If the entry doesn't exist
            PermissionDeniedError: If the entry belongs to another user
            ValidationError: If a frozen field of an invoiced entry is
                touched or the new times give a non-positive duration
            ConcurrencyError: If the version is stale
        """
        entry = await self._get_owned_entry(user_id, time_entry_id, "update")

        changes = update.model_dump(exclude_unset=True)
        expected_version = changes.pop("version", None)

        if expected_version is not None and expected_version != entry.version:
            raise ConcurrencyError(
                f"Time entry version mismatch: expected {expected_version}, "
                f"current is {entry.version}"
            )

        if entry.is_invoiced:
            disallowed = [name for name in changes if name not in INVOICE_MUTABLE_FIELDS]
            if disallowed:
                raise ValidationError(
                    f"Cannot update {', '.join(field_label(name) for name in disallowed)} "
                    "on an invoiced time entry"
                )

        nulls = [name for name in changes if name in NON_NULLABLE_FIELDS and changes[name] is None]
        if nulls:
            raise ValidationError(
                f"{', '.join(field_label(name) for name in nulls)} cannot be null"
            )

        if "task_id" in changes or "project_id" in changes:
            await self._check_task_project(entry, changes)

        if "start_time" in changes or "end_time" in changes:
            start_time = to_naive_utc(changes.get("start_time", entry.start_time))
            end_time = changes.get("end_time", entry.end_time)
            changes["start_time"] = start_time

            if end_time is not None:
                end_time = to_naive_utc(end_time)
                changes["end_time"] = end_time

                duration = calculate_duration_seconds(start_time, end_time)
                if duration <= 0:
                    raise ValidationError("End time must be after start time")

                settings = await self.get_user_settings(user_id)
                changes["duration"] = apply_time_rounding(duration, settings.rounding_interval)

        # Same rate snapshot as stop_timer for billable entries that end up closed
        if (
            not entry.is_invoiced
            and "billable_rate" not in changes
            and entry.billable_rate is None
            and changes.get("billable", entry.billable)
            and changes.get("end_time", entry.end_time) is not None
        ):
            billable_rate = await self._resolve_billable_rate(
                user_id, changes.get("project_id", entry.project_id)
            )
            if billable_rate is not None:
                changes["billable_rate"] = billable_rate

        changes["updated_at"] = utcnow()

        return await self.time_entries.update_time_entry(
            entry.id,
            changes,
            expected_version=entry.version,
        )

    async def _check_task_project(self, entry: TimeEntry, changes: dict[str, Any]) -> None:
        """Validate a task/project change; fills in the project from the task."""
        task_id = changes.get("task_id", entry.task_id)
        task = await self.tasks.get_task(task_id)
        if not task:
            raise ValidationError("Invalid task or project")

        if "project_id" not in changes:
            changes["project_id"] = task.project_id
        elif task.project_id != changes["project_id"]:
            raise ValidationError("Invalid task or project")

    async def delete_time_entry(self, user_id: str, time_entry_id: str) -> None:
        """
        Delete a time entry (hard delete).

        Raises:
            NotFoundError: If the entry doesn't exist
            PermissionDeniedError: If the entry belongs to another user
            ValidationError: If the entry has been invoiced
            ConcurrencyError: If the entry changed in the meantime
        """
        entry = await self._get_owned_entry(user_id, time_entry_id, "delete")

        if entry.is_invoiced:
            raise ValidationError("Cannot delete a time entry that has been invoiced")

        await self.time_entries.delete_time_entry(entry.id, expected_version=entry.version)

    async def get_time_entry(self, user_id: str, time_entry_id: str) -> TimeEntry:
        """Fetch a single entry the caller owns."""
        return await self._get_owned_entry(user_id, time_entry_id, "view")

    async def get_user_time_entries(
        self,
        user_id: str,
        filters: Optional[TimeEntryFilters] = None,
    ) -> TimeEntryPage:
        """List time entries for a user with optional filtering and pagination."""
        if filters is None:
            filters = TimeEntryFilters()

        normalized = {}
        if filters.start_date is not None:
            normalized["start_date"] = to_naive_utc(filters.start_date)
        if filters.end_date is not None:
            normalized["end_date"] = to_naive_utc(filters.end_date)

        return await self.time_entries.get_user_time_entries(
            user_id, filters.model_copy(update=normalized)
        )

    async def get_time_summary(
        self,
        user_id: str,
        options: SummaryOptions,
    ) -> list[TimeTrackingSummary]:
        """
        Summarise a user's entries over a range.

        Args:
            user_id: User ID
            options: Range, optional project/task filter and grouping

        Returns:
            One summary per group
        """
        options = options.model_copy(update={
            "start_date": to_naive_utc(options.start_date),
            "end_date": to_naive_utc(options.end_date),
        })
        if options.end_date < options.start_date:
            raise ValidationError("endDate must not be before startDate")

        page = await self.time_entries.get_user_time_entries(
            user_id,
            TimeEntryFilters(
                project_id=options.project_id,
                task_id=options.task_id,
                start_date=options.start_date,
                end_date=options.end_date,
                page=1,
                limit=self.summary_limit,
            ),
        )

        return build_summaries(user_id, page.entries, options, currency=self.currency)

    async def get_current_timer(self, user_id: str) -> Optional[TimeEntry]:
        """Get the currently running timer, if any."""
        return await self.time_entries.get_current_timer(user_id)

    async def get_user_settings(self, user_id: str) -> TimeTrackingSettings:
        """
        Get a user's settings, persisting the defaults on first access.
        """
        settings = await self.time_entries.get_user_settings(user_id)
        if settings is None:
            settings = await self.time_entries.create_user_settings(default_settings(user_id))
        return settings

    async def update_user_settings(
        self,
        user_id: str,
        update: TimeTrackingSettingsUpdate,
    ) -> TimeTrackingSettings:
        """Merge explicitly set fields into the user's settings."""
        current = await self.get_user_settings(user_id)

        changes = {
            name: value
            for name, value in update.model_dump(exclude_unset=True).items()
            if value is not None
        }
        merged = TimeTrackingSettings.model_validate({
            **current.model_dump(),
            **changes,
            "user_id": user_id,
        })

        return await self.time_entries.update_user_settings(merged)
