"""Pytest configuration and fixtures."""
import os

os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio
from bson import ObjectId
from httpx import ASGITransport, AsyncClient

from app.errors import ConcurrencyError, NotFoundError, ValidationError
from app.models.settings import TimeTrackingSettings
from app.models.task import Task
from app.models.time_entry import TimeEntry, TimeEntryFilters, TimeEntryPage
from app.repositories.task_repository import TaskRepository
from app.repositories.time_entry_repository import ACTIVE_TIMER_MESSAGE, TimeEntryRepository
from app.services.time_entry_service import TimeEntryService


class InMemoryTimeEntryRepository(TimeEntryRepository):
    """Dictionary-backed repository with the same write guarantees as Mongo."""

    def __init__(self):
        self.entries: dict[str, TimeEntry] = {}
        self.settings: dict[str, TimeTrackingSettings] = {}
        self.rates: dict[tuple[str, str], Decimal] = {}

    async def get_time_entry(self, entry_id: str) -> Optional[TimeEntry]:
        return self.entries.get(entry_id)

    async def create_time_entry(self, fields: dict[str, Any]) -> TimeEntry:
        if fields.get("end_time") is None and await self.get_current_timer(fields["user_id"]):
            raise ValidationError(ACTIVE_TIMER_MESSAGE)

        entry = TimeEntry(_id=str(ObjectId()), **fields)
        self.entries[entry.id] = entry
        return entry

    async def update_time_entry(
        self,
        entry_id: str,
        fields: dict[str, Any],
        expected_version: int,
    ) -> TimeEntry:
        current = self.entries.get(entry_id)
        if current is None:
            raise NotFoundError("Time entry not found")
        if current.version != expected_version:
            raise ConcurrencyError("Time entry was modified by another request")

        updated = TimeEntry.model_validate({
            **current.model_dump(),
            **fields,
            "version": current.version + 1,
        })
        self.entries[entry_id] = updated
        return updated

    async def delete_time_entry(self, entry_id: str, expected_version: int) -> None:
        current = self.entries.get(entry_id)
        if current is None:
            raise NotFoundError("Time entry not found")
        if current.version != expected_version:
            raise ConcurrencyError("Time entry was modified by another request")
        del self.entries[entry_id]

    async def get_user_time_entries(
        self,
        user_id: str,
        filters: TimeEntryFilters,
    ) -> TimeEntryPage:
        matches = [
            entry for entry in self.entries.values()
            if entry.user_id == user_id
            and (filters.project_id is None or entry.project_id == filters.project_id)
            and (filters.task_id is None or entry.task_id == filters.task_id)
            and (filters.billable is None or entry.billable == filters.billable)
            and (filters.start_date is None or entry.start_time >= filters.start_date)
            and (filters.end_date is None or entry.start_time <= filters.end_date)
        ]
        matches.sort(key=lambda entry: entry.start_time, reverse=True)
        skip = (filters.page - 1) * filters.limit

        return TimeEntryPage(
            entries=matches[skip:skip + filters.limit],
            total=len(matches),
            page=filters.page,
            limit=filters.limit,
        )

    async def get_current_timer(self, user_id: str) -> Optional[TimeEntry]:
        for entry in self.entries.values():
            if entry.user_id == user_id and entry.end_time is None:
                return entry
        return None

    async def get_user_settings(self, user_id: str) -> Optional[TimeTrackingSettings]:
        return self.settings.get(user_id)

    async def create_user_settings(
        self,
        settings: TimeTrackingSettings,
    ) -> TimeTrackingSettings:
        return self.settings.setdefault(settings.user_id, settings)

    async def update_user_settings(
        self,
        settings: TimeTrackingSettings,
    ) -> TimeTrackingSettings:
        self.settings[settings.user_id] = settings
        return settings

    async def get_billable_rate(self, user_id: str, project_id: str) -> Optional[Decimal]:
        return self.rates.get((user_id, project_id))


class InMemoryTaskRepository(TaskRepository):
    """Dictionary-backed task lookup."""

    def __init__(self, tasks: list[Task]):
        self.tasks = {task.id: task for task in tasks}

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)


TASK_ID = "64b000000000000000000001"
PROJECT_ID = "64b0000000000000000000a1"
OTHER_TASK_ID = "64b000000000000000000002"
OTHER_PROJECT_ID = "64b0000000000000000000a2"


@pytest.fixture
def repository():
    """Empty in-memory time entry repository."""
    return InMemoryTimeEntryRepository()


@pytest.fixture
def task_repository():
    """Two tasks, each in its own project."""
    return InMemoryTaskRepository([
        Task(_id=TASK_ID, project_id=PROJECT_ID, title="Write report"),
        Task(_id=OTHER_TASK_ID, project_id=OTHER_PROJECT_ID, title="Fix roof"),
    ])


@pytest.fixture
def service(repository, task_repository):
    """Service over the in-memory repositories, retrying without delay."""
    return TimeEntryService(repository, task_repository, retry_base_delay=0)


@pytest.fixture
def auth_headers():
    """Bearer token headers for user123."""
    from app.utils.auth import create_access_token

    token = create_access_token(user_id="user123")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def app_client(service):
    """
    HTTP client for the API with the service dependency overridden.

    No database connection is made; the lifespan is not run.
    """
    from app.main import app
    from app.routers.time_entries import get_time_entry_service

    app.dependency_overrides[get_time_entry_service] = lambda: service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()
