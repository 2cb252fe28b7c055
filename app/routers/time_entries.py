"""Time entry endpoints - timers, manual entries, summaries and settings."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.config import settings
from app.database import get_database
from app.models.principal import Principal
from app.models.settings import TimeTrackingSettings, TimeTrackingSettingsUpdate
from app.models.summary import SummaryGroupBy, SummaryOptions, TimeTrackingSummary
from app.models.time_entry import (
    MAX_PAGE_LIMIT,
    TimeEntry,
    TimeEntryCreate,
    TimeEntryFilters,
    TimeEntryPage,
    TimeEntryUpdate,
    TimerStart,
    TimerStop,
)
from app.repositories.task_repository import MongoTaskRepository
from app.repositories.time_entry_repository import MongoTimeEntryRepository
from app.routers.auth import get_current_principal
from app.services.time_entry_service import TimeEntryService


router = APIRouter(prefix="/time-entries", tags=["time-entries"])


async def get_time_entry_service(db=Depends(get_database)) -> TimeEntryService:
    """Build a service over the connected database."""
    return TimeEntryService(
        MongoTimeEntryRepository(db),
        MongoTaskRepository(db),
        max_attempts=settings.retry_max_attempts,
        retry_base_delay=settings.retry_base_delay_seconds,
        attempt_timeout=settings.retry_attempt_timeout_seconds,
        currency=settings.summary_currency,
        summary_limit=settings.summary_max_entries,
    )


@router.post("/timer/start", response_model=TimeEntry, status_code=status.HTTP_201_CREATED)
async def start_timer(
    timer_start: TimerStart,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    Start a new timer.

    - Requires authentication
    - Only one timer can run at a time
    - Task must exist
    """
    return await service.start_timer(
        user_id=principal.user_id,
        task_id=timer_start.task_id,
        description=timer_start.description,
        billable=timer_start.billable,
        tags=timer_start.tags,
    )


@router.get("/timer/current", response_model=TimeEntry)
async def get_current_timer(
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    Get the currently running timer.

    - Returns 404 if no timer is running
    """
    entry = await service.get_current_timer(principal.user_id)

    if not entry:
        raise HTTPException(status_code=404, detail="No timer running")

    return entry


@router.get("/summary", response_model=list[TimeTrackingSummary])
async def get_time_summary(
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    group_by: SummaryGroupBy = Query(SummaryGroupBy.DAY, alias="groupBy"),
    project_id: Optional[str] = Query(None, alias="projectId"),
    task_id: Optional[str] = Query(None, alias="taskId"),
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """Summarise tracked time grouped by day, week, month, project or task."""
    options = SummaryOptions(
        start_date=start_date,
        end_date=end_date,
        group_by=group_by,
        project_id=project_id,
        task_id=task_id,
    )
    return await service.get_time_summary(principal.user_id, options)


@router.get("/settings", response_model=TimeTrackingSettings)
async def get_settings(
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """Get the caller's time tracking settings (defaults on first access)."""
    return await service.get_user_settings(principal.user_id)


@router.patch("/settings", response_model=TimeTrackingSettings)
async def update_settings(
    settings_update: TimeTrackingSettingsUpdate,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """Update some of the caller's time tracking settings."""
    return await service.update_user_settings(principal.user_id, settings_update)


@router.get("", response_model=TimeEntryPage)
async def list_entries(
    project_id: Optional[str] = Query(None, alias="projectId"),
    task_id: Optional[str] = Query(None, alias="taskId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    billable: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_LIMIT),
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    List time entries for the authenticated user.

    - Optional filters: projectId, taskId, startDate, endDate, billable
    - Results sorted by startTime descending (most recent first)
    """
    filters = TimeEntryFilters(
        project_id=project_id,
        task_id=task_id,
        start_date=start_date,
        end_date=end_date,
        billable=billable,
        page=page,
        limit=limit,
    )
    return await service.get_user_time_entries(principal.user_id, filters)


@router.post("", response_model=TimeEntry, status_code=status.HTTP_201_CREATED)
async def create_entry(
    entry_create: TimeEntryCreate,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    Create a manual time entry.

    - Task must belong to the project
    - Duration is calculated if not provided, then rounded
    """
    return await service.create_manual_entry(
        user_id=principal.user_id,
        task_id=entry_create.task_id,
        project_id=entry_create.project_id,
        description=entry_create.description,
        start_time=entry_create.start_time,
        end_time=entry_create.end_time,
        duration=entry_create.duration,
        billable=entry_create.billable,
        billable_rate=entry_create.billable_rate,
        tags=entry_create.tags,
    )


@router.get("/{entry_id}", response_model=TimeEntry)
async def get_entry(
    entry_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """Get a specific time entry owned by the caller."""
    return await service.get_time_entry(principal.user_id, entry_id)


@router.post("/{entry_id}/stop", response_model=TimeEntry)
async def stop_timer(
    entry_id: str,
    timer_stop: Optional[TimerStop] = None,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    Stop a running timer.

    - End time defaults to now
    - Duration is rounded to the user's rounding interval
    """
    end_time = timer_stop.end_time if timer_stop else None
    return await service.stop_timer(principal.user_id, entry_id, end_time)


@router.put("/{entry_id}", response_model=TimeEntry)
async def update_entry(
    entry_id: str,
    entry_update: TimeEntryUpdate,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    Update a time entry.

    - Send the version you last read; a stale version returns 409
    - Invoiced entries only accept description and tags
    """
    return await service.update_time_entry(principal.user_id, entry_id, entry_update)


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entry(
    entry_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TimeEntryService = Depends(get_time_entry_service),
):
    """
    Delete a time entry.

    - Invoiced entries cannot be deleted
    - Hard delete (permanent)
    """
    await service.delete_time_entry(principal.user_id, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
