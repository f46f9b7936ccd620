"""
Retry policy for transient storage failures.

Storage calls that may hit a locked SQLite file or a dropped PostgreSQL
connection are wrapped in ``retry_transient``. Each attempt re-runs the whole
unit of work, so the wrapped callable must open (or roll back) its own
transaction.
"""
import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError

from agilepm.core import config
from agilepm.core.exceptions import TransientStorageError
from agilepm.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OperationalError, TransientStorageError)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    description: str = "storage operation",
) -> T:
    """
    Run ``operation`` and retry it on transient storage errors.

    Args:
        operation: Zero-argument coroutine function performing one unit of work
        attempts: Total attempts including the first (defaults to config)
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for a single backoff delay
        description: Used in log messages

    Returns:
        Whatever ``operation`` returns

    Raises:
        TransientStorageError: if every attempt failed with a transient error
    """
    attempts = attempts if attempts is not None else config.STORAGE_RETRY_ATTEMPTS
    base_delay = base_delay if base_delay is not None else config.STORAGE_RETRY_BASE_DELAY
    max_delay = max_delay if max_delay is not None else config.STORAGE_RETRY_MAX_DELAY
    attempts = max(1, attempts)

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TRANSIENT_ERRORS as e:
            last_error = e
            if attempt == attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            log.warning(
                "Transient failure in %s (attempt %d/%d), retrying in %.3fs: %s",
                description, attempt, attempts, delay, e,
            )
            await asyncio.sleep(delay)

    log.error("Giving up on %s after %d attempts: %s", description, attempts, last_error)
    raise TransientStorageError(f"{description} failed after {attempts} attempts") from last_error
