"""Bounded retry combinator for operations that may race or hit a flaky store."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from app.errors import TransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """Backoff of ``attempt * base_delay`` seconds."""

    def backoff(attempt: int) -> float:
        return attempt * base_delay

    return backoff


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    backoff: Optional[Callable[[int], float]] = None,
    attempt_timeout: Optional[float] = None,
) -> T:
    """
    Run an async operation, retrying transient failures.

    Only TransientError (and an attempt exceeding attempt_timeout) is
    retried; any other exception propagates immediately. After the last
    attempt the failure is re-raised unchanged.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total number of attempts
        backoff: Maps the failed attempt number (1-based) to a delay in seconds
        attempt_timeout: Optional per-attempt deadline in seconds

    Returns:
        The operation's result
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if backoff is None:
        backoff = linear_backoff(1.0)

    for attempt in range(1, max_attempts + 1):
        try:
            if attempt_timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), timeout=attempt_timeout)
            except asyncio.TimeoutError as e:
                raise TransientError(
                    f"Operation timed out after {attempt_timeout}s"
                ) from e
        except TransientError as e:
            if attempt == max_attempts:
                logger.error("Giving up after %d attempts: %s", attempt, e)
                raise
            delay = backoff(attempt)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                max_attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
