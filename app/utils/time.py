"""Time helpers: UTC normalisation, durations and rounding."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form MongoDB returns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalise a datetime to naive UTC.

    Aware datetimes are converted to UTC first; naive ones are assumed
    to already be UTC.

    Example:
        >>> from datetime import timedelta
        >>> to_naive_utc(datetime(2024, 1, 1, 12, tzinfo=timezone(timedelta(hours=2))))
        datetime.datetime(2024, 1, 1, 10, 0)
    """
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def calculate_duration_seconds(start_time: datetime, end_time: datetime) -> int:
    """
    Whole seconds elapsed between two instants, floored.

    Args:
        start_time: Start time
        end_time: End time

    Returns:
        Elapsed seconds (negative if end_time precedes start_time)
    """
    delta = to_naive_utc(end_time) - to_naive_utc(start_time)
    return int(delta.total_seconds() // 1)


def apply_time_rounding(duration_seconds: int, interval_minutes: int) -> int:
    """
    Round a duration to the nearest rounding interval.

    A remainder of at least half the interval rounds up, anything less
    rounds down. An interval of zero or less disables rounding.

    Args:
        duration_seconds: Duration to round
        interval_minutes: Rounding interval in minutes

    Returns:
        Rounded duration in seconds

    Example:
        >>> apply_time_rounding(450, 15)
        900
        >>> apply_time_rounding(449, 15)
        0
        >>> apply_time_rounding(449, 0)
        449
    """
    if interval_minutes <= 0:
        return duration_seconds

    interval_seconds = interval_minutes * 60
    remainder = duration_seconds % interval_seconds

    if remainder * 2 >= interval_seconds:
        return duration_seconds + (interval_seconds - remainder)
    return duration_seconds - remainder
