"""Summary aggregation over an in-memory set of time entries."""
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Union

from app.models.summary import SummaryGroupBy, SummaryOptions, TimeTrackingSummary
from app.models.time_entry import TimeEntry
from app.utils.time import to_naive_utc


GroupKey = Union[date, str]

SECONDS_PER_HOUR = Decimal(3600)
CENT = Decimal("0.01")


def week_start(day: date) -> date:
    """The Sunday on or before ``day``."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def group_key(entry: TimeEntry, group_by: SummaryGroupBy) -> GroupKey:
    """Key an entry falls under for the given grouping."""
    day = to_naive_utc(entry.start_time).date()

    if group_by == SummaryGroupBy.DAY:
        return day
    if group_by == SummaryGroupBy.WEEK:
        return week_start(day)
    if group_by == SummaryGroupBy.MONTH:
        return day.replace(day=1)
    if group_by == SummaryGroupBy.PROJECT:
        return entry.project_id
    return entry.task_id


def group_time_entries(
    entries: Iterable[TimeEntry],
    group_by: SummaryGroupBy,
) -> dict[GroupKey, list[TimeEntry]]:
    """Group entries by key, keys in ascending order."""
    grouped: dict[GroupKey, list[TimeEntry]] = defaultdict(list)
    for entry in entries:
        grouped[group_key(entry, group_by)].append(entry)
    return {key: grouped[key] for key in sorted(grouped)}


def period_bounds(
    key: GroupKey,
    options: SummaryOptions,
) -> tuple[datetime, datetime]:
    """
    Start and end of the period a group covers.

    Calendar groupings cover [key, next key); project and task groupings
    cover the whole requested range.
    """
    group_by = options.group_by
    if group_by in (SummaryGroupBy.PROJECT, SummaryGroupBy.TASK):
        return options.start_date, options.end_date

    start = datetime.combine(key, datetime.min.time())
    if group_by == SummaryGroupBy.DAY:
        return start, start + timedelta(days=1)
    if group_by == SummaryGroupBy.WEEK:
        return start, start + timedelta(days=7)

    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def billable_amount(entries: Iterable[TimeEntry]) -> Decimal:
    """Sum of duration (hours) times rate over billable entries with a rate."""
    amount = Decimal("0")
    for entry in entries:
        if entry.billable and entry.billable_rate:
            amount += Decimal(entry.duration) / SECONDS_PER_HOUR * entry.billable_rate
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def build_summaries(
    user_id: str,
    entries: Iterable[TimeEntry],
    options: SummaryOptions,
    currency: str = "USD",
) -> list[TimeTrackingSummary]:
    """
    Group entries and total each group.

    Args:
        user_id: Owner of the entries
        entries: Entries already filtered to the requested range
        options: Range and grouping
        currency: Currency code reported with billable amounts

    Returns:
        One summary per group, in ascending key order
    """
    summaries = []

    for key, group in group_time_entries(entries, options.group_by).items():
        billable_duration = sum(entry.duration for entry in group if entry.billable)
        non_billable_duration = sum(entry.duration for entry in group if not entry.billable)
        period_start, period_end = period_bounds(key, options)

        summaries.append(
            TimeTrackingSummary(
                user_id=user_id,
                project_id=key if options.group_by == SummaryGroupBy.PROJECT else None,
                task_id=key if options.group_by == SummaryGroupBy.TASK else None,
                period_start=period_start,
                period_end=period_end,
                total_duration=billable_duration + non_billable_duration,
                billable_duration=billable_duration,
                non_billable_duration=non_billable_duration,
                billable_amount=billable_amount(group),
                currency=currency,
                entries=group,
            )
        )

    return summaries
