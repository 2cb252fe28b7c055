"""Translate time tracking errors into HTTP responses."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.errors import (
    ConcurrencyError,
    NotFoundError,
    PermissionDeniedError,
    TimeEntryError,
    TransientError,
    ValidationError,
)


logger = logging.getLogger(__name__)

STATUS_CODES = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrencyError, status.HTTP_409_CONFLICT),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_code_for(exc: TimeEntryError) -> int:
    """HTTP status for a time tracking error."""
    for error_type, status_code in STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


async def time_entry_error_handler(request: Request, exc: TimeEntryError) -> JSONResponse:
    status_code = status_code_for(exc)

    log = logger.warning if isinstance(exc, TransientError) else logger.info
    log(
        "%s %s -> %d %s: %s",
        request.method,
        request.url.path,
        status_code,
        exc.code,
        exc.message,
    )

    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the handlers on an application."""
    app.add_exception_handler(TimeEntryError, time_entry_error_handler)
