"""Typed errors raised by the time tracking core."""


class TimeEntryError(Exception):
    """Base error for time tracking operations."""

    code = "TIME_ENTRY_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TimeEntryError):
    """Malformed, missing or contradictory input. Never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(TimeEntryError):
    """Unknown time entry, task or settings."""

    code = "NOT_FOUND"


class PermissionDeniedError(TimeEntryError):
    """The entry exists but belongs to another user."""

    code = "PERMISSION_DENIED"


class ConcurrencyError(TimeEntryError):
    """Version mismatch on a conditioned write.

    Callers must re-fetch and retry with fresh state.
    """

    code = "CONCURRENCY_ERROR"


class TransientError(TimeEntryError):
    """Storage failure presumed recoverable."""

    code = "TRANSIENT_ERROR"
