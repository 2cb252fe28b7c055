"""Time entry repository - persistence of time entries, settings and rates."""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Optional

from bson import Decimal128, ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    WTimeoutError,
)

from app.errors import ConcurrencyError, NotFoundError, TransientError, ValidationError
from app.models.settings import TimeTrackingSettings
from app.models.time_entry import TimeEntry, TimeEntryFilters, TimeEntryPage


ACTIVE_TIMER_MESSAGE = "You already have an active timer running"

TRANSIENT_DRIVER_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


class TimeEntryRepository(ABC):
    """
    Repository interface for time entries.

    Every call is atomic on its own. Conditioned writes take the version
    the caller last read and fail with ConcurrencyError if it moved.
    """

    @abstractmethod
    async def get_time_entry(self, entry_id: str) -> Optional[TimeEntry]:
        """Find a time entry by ID. Returns None if not found."""

    @abstractmethod
    async def create_time_entry(self, fields: dict[str, Any]) -> TimeEntry:
        """
        Insert a new time entry and return it with its generated ID.

        Raises ValidationError if it would give the user a second
        running timer.
        """

    @abstractmethod
    async def update_time_entry(
        self,
        entry_id: str,
        fields: dict[str, Any],
        expected_version: int,
    ) -> TimeEntry:
        """
        Set fields and bump the version, only if the stored version matches.

        Raises NotFoundError or ConcurrencyError.
        """

    @abstractmethod
    async def delete_time_entry(self, entry_id: str, expected_version: int) -> None:
        """Delete an entry if its version still matches."""

    @abstractmethod
    async def get_user_time_entries(
        self,
        user_id: str,
        filters: TimeEntryFilters,
    ) -> TimeEntryPage:
        """List a user's entries, most recent start first."""

    @abstractmethod
    async def get_current_timer(self, user_id: str) -> Optional[TimeEntry]:
        """Find the user's running timer, if any."""

    @abstractmethod
    async def get_user_settings(self, user_id: str) -> Optional[TimeTrackingSettings]:
        """Find stored settings for a user."""

    @abstractmethod
    async def create_user_settings(
        self,
        settings: TimeTrackingSettings,
    ) -> TimeTrackingSettings:
        """Store settings unless some already exist; return the stored ones."""

    @abstractmethod
    async def update_user_settings(
        self,
        settings: TimeTrackingSettings,
    ) -> TimeTrackingSettings:
        """Replace a user's settings."""

    @abstractmethod
    async def get_billable_rate(self, user_id: str, project_id: str) -> Optional[Decimal]:
        """Hourly rate for a user on a project, if one is configured."""


def parse_object_id(value: str) -> Optional[ObjectId]:
    """Parse an ObjectId string, returning None when malformed."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a stored numeric value back to Decimal."""
    if value is None:
        return None
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return Decimal(str(value))


def to_decimal128(value: Optional[Decimal]) -> Optional[Decimal128]:
    """Decimals are stored as BSON Decimal128."""
    if value is None:
        return None
    return Decimal128(str(value))


@contextmanager
def translate_driver_errors():
    """Re-raise recoverable driver failures as TransientError."""
    try:
        yield
    except TRANSIENT_DRIVER_ERRORS as e:
        raise TransientError(f"Database unavailable: {e}") from e


class MongoTimeEntryRepository(TimeEntryRepository):
    """MongoDB implementation backed by Motor collections."""

    def __init__(self, db):
        """Initialize repository with database connection."""
        self.db = db
        self.time_entries = db["time_entries"]
        self.settings = db["time_tracking_settings"]
        self.billable_rates = db["billable_rates"]

    async def ensure_indexes(self) -> None:
        """
        Create the indexes the write path relies on.

        The partial unique index allows at most one document per user
        whose end_time is null, which closes the check-then-insert race
        in timer start.
        """
        with translate_driver_errors():
            await self.time_entries.create_index(
                [("user_id", ASCENDING)],
                name="one_running_timer_per_user",
                unique=True,
                partialFilterExpression={"end_time": {"$type": "null"}},
            )
            await self.time_entries.create_index(
                [("user_id", ASCENDING), ("start_time", DESCENDING)],
                name="user_start_time",
            )
            await self.settings.create_index(
                [("user_id", ASCENDING)],
                name="settings_user_id",
                unique=True,
            )
            await self.billable_rates.create_index(
                [("user_id", ASCENDING), ("project_id", ASCENDING)],
                name="rate_user_project",
            )

    def _doc_to_entry(self, doc: dict) -> TimeEntry:
        """
        Convert database document to TimeEntry model.
        """
        return TimeEntry(
            _id=str(doc["_id"]),
            task_id=doc["task_id"],
            project_id=doc["project_id"],
            user_id=doc["user_id"],
            description=doc.get("description", ""),
            start_time=doc["start_time"],
            end_time=doc.get("end_time"),
            duration=doc.get("duration", 0),
            billable=doc.get("billable", True),
            billable_rate=to_decimal(doc.get("billable_rate")),
            invoice_id=doc.get("invoice_id"),
            tags=doc.get("tags", []),
            source=doc["source"],
            version=doc.get("version", 1),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )

    def _fields_to_doc(self, fields: dict[str, Any]) -> dict[str, Any]:
        doc = dict(fields)
        if "billable_rate" in doc:
            doc["billable_rate"] = to_decimal128(doc["billable_rate"])
        if "source" in doc and hasattr(doc["source"], "value"):
            doc["source"] = doc["source"].value
        return doc

    def _doc_to_settings(self, doc: dict) -> TimeTrackingSettings:
        data = {key: value for key, value in doc.items() if key != "_id"}
        data["default_billable_rate"] = to_decimal(data.get("default_billable_rate")) or Decimal("0")
        return TimeTrackingSettings.model_validate(data)

    def _settings_to_doc(self, settings: TimeTrackingSettings) -> dict[str, Any]:
        doc = settings.model_dump()
        doc["default_billable_rate"] = to_decimal128(settings.default_billable_rate)
        return doc

    async def get_time_entry(self, entry_id: str) -> Optional[TimeEntry]:
        object_id = parse_object_id(entry_id)
        if object_id is None:
            return None

        with translate_driver_errors():
            doc = await self.time_entries.find_one({"_id": object_id})

        if not doc:
            return None
        return self._doc_to_entry(doc)

    async def create_time_entry(self, fields: dict[str, Any]) -> TimeEntry:
        entry_doc = self._fields_to_doc(fields)

        try:
            with translate_driver_errors():
                result = await self.time_entries.insert_one(entry_doc)
        except DuplicateKeyError as e:
            raise ValidationError(ACTIVE_TIMER_MESSAGE) from e

        entry_doc["_id"] = result.inserted_id
        return self._doc_to_entry(entry_doc)

    async def update_time_entry(
        self,
        entry_id: str,
        fields: dict[str, Any],
        expected_version: int,
    ) -> TimeEntry:
        object_id = parse_object_id(entry_id)
        if object_id is None:
            raise NotFoundError("Time entry not found")

        try:
            with translate_driver_errors():
                updated_doc = await self.time_entries.find_one_and_update(
                    {"_id": object_id, "version": expected_version},
                    {"$set": self._fields_to_doc(fields), "$inc": {"version": 1}},
                    return_document=ReturnDocument.AFTER,
                )
        except DuplicateKeyError as e:
            raise ValidationError(ACTIVE_TIMER_MESSAGE) from e

        if updated_doc is None:
            await self._raise_missing_or_stale(object_id)

        return self._doc_to_entry(updated_doc)

    async def delete_time_entry(self, entry_id: str, expected_version: int) -> None:
        object_id = parse_object_id(entry_id)
        if object_id is None:
            raise NotFoundError("Time entry not found")

        with translate_driver_errors():
            result = await self.time_entries.delete_one(
                {"_id": object_id, "version": expected_version}
            )

        if result.deleted_count == 0:
            await self._raise_missing_or_stale(object_id)

    async def _raise_missing_or_stale(self, object_id: ObjectId) -> None:
        """A conditioned write matched nothing: tell apart gone from moved."""
        with translate_driver_errors():
            current = await self.time_entries.find_one({"_id": object_id}, {"version": 1})

        if current is None:
            raise NotFoundError("Time entry not found")
        raise ConcurrencyError(
            "Time entry was modified by another request "
            f"(current version {current.get('version')})"
        )

    async def get_user_time_entries(
        self,
        user_id: str,
        filters: TimeEntryFilters,
    ) -> TimeEntryPage:
        # Build query
        query: dict[str, Any] = {
            "user_id": user_id,
        }

        if filters.project_id:
            query["project_id"] = filters.project_id
        if filters.task_id:
            query["task_id"] = filters.task_id
        if filters.billable is not None:
            query["billable"] = filters.billable

        if filters.start_date or filters.end_date:
            query["start_time"] = {}
            if filters.start_date:
                query["start_time"]["$gte"] = filters.start_date
            if filters.end_date:
                query["start_time"]["$lte"] = filters.end_date

        skip = (filters.page - 1) * filters.limit

        with translate_driver_errors():
            total = await self.time_entries.count_documents(query)
            cursor = (
                self.time_entries.find(query)
                .sort("start_time", DESCENDING)
                .skip(skip)
                .limit(filters.limit)
            )
            entry_docs = await cursor.to_list(length=filters.limit)

        return TimeEntryPage(
            entries=[self._doc_to_entry(doc) for doc in entry_docs],
            total=total,
            page=filters.page,
            limit=filters.limit,
        )

    async def get_current_timer(self, user_id: str) -> Optional[TimeEntry]:
        with translate_driver_errors():
            running_timer = await self.time_entries.find_one({
                "user_id": user_id,
                "end_time": None,
            })

        if not running_timer:
            return None
        return self._doc_to_entry(running_timer)

    async def get_user_settings(self, user_id: str) -> Optional[TimeTrackingSettings]:
        with translate_driver_errors():
            doc = await self.settings.find_one({"user_id": user_id})

        if not doc:
            return None
        return self._doc_to_settings(doc)

    async def create_user_settings(
        self,
        settings: TimeTrackingSettings,
    ) -> TimeTrackingSettings:
        with translate_driver_errors():
            try:
                await self.settings.update_one(
                    {"user_id": settings.user_id},
                    {"$setOnInsert": self._settings_to_doc(settings)},
                    upsert=True,
                )
            except DuplicateKeyError:
                # Lost an upsert race; the other writer's document stands
                pass
            doc = await self.settings.find_one({"user_id": settings.user_id})

        if not doc:
            raise NotFoundError("Time tracking settings not found")
        return self._doc_to_settings(doc)

    async def update_user_settings(
        self,
        settings: TimeTrackingSettings,
    ) -> TimeTrackingSettings:
        with translate_driver_errors():
            doc = await self.settings.find_one_and_update(
                {"user_id": settings.user_id},
                {"$set": self._settings_to_doc(settings)},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return self._doc_to_settings(doc)

    async def get_billable_rate(self, user_id: str, project_id: str) -> Optional[Decimal]:
        with translate_driver_errors():
            rate = await self.billable_rates.find_one({
                "user_id": user_id,
                "project_id": project_id,
            })

        if not rate:
            return None
        return to_decimal(rate.get("hourly_rate"))
