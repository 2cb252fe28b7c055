"""Tests for the MongoDB repositories."""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from bson import Decimal128, ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError

from app.errors import ConcurrencyError, NotFoundError, TransientError, ValidationError


START = datetime(2024, 3, 11, 9, 0)


def mock_database():
    """Motor database whose collections are AsyncMocks."""
    collections = {
        "time_entries": AsyncMock(),
        "time_tracking_settings": AsyncMock(),
        "billable_rates": AsyncMock(),
        "tasks": AsyncMock(),
    }
    mock_db = MagicMock()
    mock_db.__getitem__.side_effect = lambda key: collections[key]
    return mock_db, collections


def entry_doc(**overrides):
    doc = {
        "_id": ObjectId(),
        "task_id": "t1",
        "project_id": "p1",
        "user_id": "user123",
        "description": "Reading",
        "start_time": START,
        "end_time": START + timedelta(hours=1),
        "duration": 3600,
        "billable": True,
        "billable_rate": Decimal128("75.50"),
        "invoice_id": None,
        "tags": ["a"],
        "source": "manual",
        "version": 2,
        "created_at": START,
        "updated_at": START,
    }
    doc.update(overrides)
    return doc


@pytest.mark.asyncio
class TestTimeEntryReads:
    """Tests for reading time entries."""

    async def test_get_time_entry_converts_document(self):
        """Test documents map to TimeEntry with Decimal rates."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        doc = entry_doc()
        collections["time_entries"].find_one.return_value = doc

        repo = MongoTimeEntryRepository(mock_db)
        entry = await repo.get_time_entry(str(doc["_id"]))

        assert entry.id == str(doc["_id"])
        assert entry.billable_rate == Decimal("75.50")
        assert entry.version == 2
        collections["time_entries"].find_one.assert_awaited_once_with({"_id": doc["_id"]})

    async def test_get_time_entry_invalid_id(self):
        """Test a malformed id is treated as not found without a query."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        repo = MongoTimeEntryRepository(mock_db)

        assert await repo.get_time_entry("not-an-object-id") is None
        collections["time_entries"].find_one.assert_not_called()

    async def test_get_current_timer_queries_null_end_time(self):
        """Test the running timer lookup filters on end_time null."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["time_entries"].find_one.return_value = None

        repo = MongoTimeEntryRepository(mock_db)

        assert await repo.get_current_timer("user123") is None
        collections["time_entries"].find_one.assert_awaited_once_with(
            {"user_id": "user123", "end_time": None}
        )

    async def test_list_builds_query_and_pagination(self):
        """Test filters, sort, skip and limit reach the cursor."""
        from app.models.time_entry import TimeEntryFilters
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        entries = collections["time_entries"]
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.skip.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[entry_doc()])
        entries.find = MagicMock(return_value=cursor)
        entries.count_documents.return_value = 11

        repo = MongoTimeEntryRepository(mock_db)
        page = await repo.get_user_time_entries(
            "user123",
            TimeEntryFilters(
                project_id="p1",
                billable=False,
                start_date=START,
                end_date=START + timedelta(days=7),
                page=3,
                limit=5,
            ),
        )

        expected_query = {
            "user_id": "user123",
            "project_id": "p1",
            "billable": False,
            "start_time": {"$gte": START, "$lte": START + timedelta(days=7)},
        }
        entries.find.assert_called_once_with(expected_query)
        entries.count_documents.assert_awaited_once_with(expected_query)
        cursor.skip.assert_called_once_with(10)
        cursor.limit.assert_called_once_with(5)
        assert page.total == 11
        assert page.page == 3
        assert len(page.entries) == 1

    async def test_driver_failure_is_transient(self):
        """Test connection errors surface as TransientError."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["time_entries"].find_one.side_effect = AutoReconnect("primary stepped down")

        repo = MongoTimeEntryRepository(mock_db)

        with pytest.raises(TransientError, match="Database unavailable"):
            await repo.get_current_timer("user123")


@pytest.mark.asyncio
class TestTimeEntryWrites:
    """Tests for conditioned writes."""

    async def test_create_returns_entry_with_id(self):
        """Test insert assigns the generated id."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        inserted_id = ObjectId()
        collections["time_entries"].insert_one.return_value = MagicMock(inserted_id=inserted_id)

        repo = MongoTimeEntryRepository(mock_db)
        fields = entry_doc()
        del fields["_id"]
        fields["billable_rate"] = Decimal("80")

        entry = await repo.create_time_entry(fields)

        assert entry.id == str(inserted_id)
        assert entry.billable_rate == Decimal("80")
        stored = collections["time_entries"].insert_one.call_args.args[0]
        assert isinstance(stored["billable_rate"], Decimal128)

    async def test_create_duplicate_running_timer(self):
        """Test the unique running-timer index maps to a validation error."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["time_entries"].insert_one.side_effect = DuplicateKeyError("E11000")

        repo = MongoTimeEntryRepository(mock_db)
        fields = entry_doc(end_time=None, duration=0)
        del fields["_id"]

        with pytest.raises(ValidationError, match="already have an active timer"):
            await repo.create_time_entry(fields)

    async def test_update_is_conditioned_on_version(self):
        """Test the update filters on the expected version and increments it."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        doc = entry_doc(version=3, description="Edited")
        collections["time_entries"].find_one_and_update.return_value = doc

        repo = MongoTimeEntryRepository(mock_db)
        entry = await repo.update_time_entry(
            str(doc["_id"]), {"description": "Edited"}, expected_version=2
        )

        assert entry.version == 3
        call = collections["time_entries"].find_one_and_update.call_args
        assert call.args[0] == {"_id": doc["_id"], "version": 2}
        assert call.args[1] == {"$set": {"description": "Edited"}, "$inc": {"version": 1}}

    async def test_update_stale_version_conflicts(self):
        """Test a miss on an existing document is a concurrency conflict."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        object_id = ObjectId()
        collections["time_entries"].find_one_and_update.return_value = None
        collections["time_entries"].find_one.return_value = {"_id": object_id, "version": 5}

        repo = MongoTimeEntryRepository(mock_db)

        with pytest.raises(ConcurrencyError, match="current version 5"):
            await repo.update_time_entry(str(object_id), {"description": "x"}, expected_version=4)

    async def test_update_missing_entry(self):
        """Test a miss on a missing document is not found."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["time_entries"].find_one_and_update.return_value = None
        collections["time_entries"].find_one.return_value = None

        repo = MongoTimeEntryRepository(mock_db)

        with pytest.raises(NotFoundError):
            await repo.update_time_entry(str(ObjectId()), {"description": "x"}, expected_version=1)

    async def test_delete_stale_version_conflicts(self):
        """Test delete is conditioned on the version too."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        object_id = ObjectId()
        collections["time_entries"].delete_one.return_value = MagicMock(deleted_count=0)
        collections["time_entries"].find_one.return_value = {"_id": object_id, "version": 2}

        repo = MongoTimeEntryRepository(mock_db)

        with pytest.raises(ConcurrencyError):
            await repo.delete_time_entry(str(object_id), expected_version=1)

        collections["time_entries"].delete_one.assert_awaited_once_with(
            {"_id": object_id, "version": 1}
        )

    async def test_delete_success(self):
        """Test a matching delete returns quietly."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["time_entries"].delete_one.return_value = MagicMock(deleted_count=1)

        repo = MongoTimeEntryRepository(mock_db)

        assert await repo.delete_time_entry(str(ObjectId()), expected_version=1) is None
        collections["time_entries"].find_one.assert_not_called()

    async def test_ensure_indexes_creates_running_timer_index(self):
        """Test the partial unique index on running timers is created."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        repo = MongoTimeEntryRepository(mock_db)

        await repo.ensure_indexes()

        calls = collections["time_entries"].create_index.call_args_list
        running = [c for c in calls if c.kwargs.get("name") == "one_running_timer_per_user"]
        assert len(running) == 1
        assert running[0].kwargs["unique"] is True
        assert running[0].kwargs["partialFilterExpression"] == {"end_time": {"$type": "null"}}


@pytest.mark.asyncio
class TestSettingsAndRates:
    """Tests for settings and billable rate persistence."""

    async def test_get_settings_missing(self):
        """Test no stored settings returns None."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["time_tracking_settings"].find_one.return_value = None

        repo = MongoTimeEntryRepository(mock_db)

        assert await repo.get_user_settings("user123") is None

    async def test_create_settings_inserts_if_absent(self):
        """Test defaults are written with $setOnInsert and read back."""
        from app.models.settings import default_settings
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        settings = collections["time_tracking_settings"]
        stored = default_settings("user123").model_dump()
        stored["_id"] = ObjectId()
        stored["default_billable_rate"] = Decimal128("0")
        settings.find_one.return_value = stored

        repo = MongoTimeEntryRepository(mock_db)
        result = await repo.create_user_settings(default_settings("user123"))

        call = settings.update_one.call_args
        assert call.args[0] == {"user_id": "user123"}
        assert "$setOnInsert" in call.args[1]
        assert call.kwargs["upsert"] is True
        assert result.rounding_interval == 15
        assert result.default_billable_rate == Decimal("0")

    async def test_get_billable_rate(self):
        """Test rates come back as Decimal."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["billable_rates"].find_one.return_value = {
            "user_id": "user123",
            "project_id": "p1",
            "hourly_rate": Decimal128("120.00"),
        }

        repo = MongoTimeEntryRepository(mock_db)

        assert await repo.get_billable_rate("user123", "p1") == Decimal("120.00")

    async def test_get_billable_rate_missing(self):
        """Test no rate configured returns None."""
        from app.repositories.time_entry_repository import MongoTimeEntryRepository

        mock_db, collections = mock_database()
        collections["billable_rates"].find_one.return_value = None

        repo = MongoTimeEntryRepository(mock_db)

        assert await repo.get_billable_rate("user123", "p1") is None


@pytest.mark.asyncio
class TestTaskRepository:
    """Tests for task lookups."""

    async def test_get_task(self):
        """Test a task document maps to Task."""
        from app.repositories.task_repository import MongoTaskRepository

        mock_db, collections = mock_database()
        task_id = ObjectId()
        project_id = ObjectId()
        collections["tasks"].find_one.return_value = {
            "_id": task_id,
            "project_id": project_id,
            "title": "Write report",
        }

        repo = MongoTaskRepository(mock_db)
        task = await repo.get_task(str(task_id))

        assert task.id == str(task_id)
        assert task.project_id == str(project_id)

    async def test_get_task_invalid_id(self):
        """Test malformed task ids resolve to None."""
        from app.repositories.task_repository import MongoTaskRepository

        mock_db, collections = mock_database()
        repo = MongoTaskRepository(mock_db)

        assert await repo.get_task("nonexistent") is None
