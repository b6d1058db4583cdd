"""
Bounded retry with exponential backoff.
Wraps extraction, embedding batches, chunk inserts and crawl page fetches.
"""
import asyncio
import random
import re
from typing import Awaitable, Callable, Optional, TypeVar

from .cancellation import IngestionCancelledError
from .logging_config import logger

T = TypeVar("T")

ShouldRetry = Callable[[BaseException, int], bool]

MAX_JITTER_MS = 120

_VALIDATION_MARKERS = ("required", "unsupported", "valid url", "too short")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "fetch",
    "socket",
    "econn",
    "connection reset",
    "cannot connect",
    "429",
)
_SERVER_STATUS = re.compile(r"(^|\D)5\d\d(\D|$)")


def backoff_delay_ms(
    attempt: int,
    base_delay_ms: int = 300,
    max_delay_ms: int = 3000,
    factor: float = 2.0,
) -> float:
    """Delay before the retry that follows `attempt` (1-based), without jitter."""
    return min(base_delay_ms * factor ** (attempt - 1), max_delay_ms)


async def with_retry(
    task: Callable[[int], Awaitable[T]],
    retries: int = 2,
    base_delay_ms: int = 300,
    max_delay_ms: int = 3000,
    factor: float = 2.0,
    should_retry: Optional[ShouldRetry] = None,
    label: str = "operation",
) -> T:
    """
    Execute `task(attempt)` with bounded exponential backoff retries.

    Args:
        task: Coroutine factory receiving the 1-based attempt number
        retries: Retries after the first attempt (2 means up to 3 attempts)
        base_delay_ms: Delay after the first failed attempt
        max_delay_ms: Backoff cap before jitter
        factor: Exponential growth factor
        should_retry: Error classifier; when omitted every error is retried
        label: Name used in retry log events

    Returns:
        Whatever the first successful attempt returns

    Raises:
        The last error once the budget is spent or the classifier refuses.
    """
    attempt = 1
    while True:
        try:
            return await task(attempt)
        except Exception as e:
            if attempt > retries:
                raise
            if should_retry is not None and not should_retry(e, attempt):
                raise

            delay_ms = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms, factor)
            delay_ms += random.randint(0, MAX_JITTER_MS - 1)
            logger.warning(
                "Retrying after failure",
                operation=label,
                attempt=attempt,
                max_attempts=retries + 1,
                delay_ms=delay_ms,
                error=str(e),
            )
            await asyncio.sleep(delay_ms / 1000)
            attempt += 1


# ==================== Error classification ====================

def is_cancellation_error(error: BaseException) -> bool:
    if isinstance(error, IngestionCancelledError):
        return True
    return "cancelled" in str(error).lower()


def is_retryable_error(error: BaseException, attempt: int = 0) -> bool:
    """Transient infrastructure failures are retryable; cancellation never is."""
    if is_cancellation_error(error):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return True
    return bool(_SERVER_STATUS.search(message))


def is_retryable_extraction_error(error: BaseException, attempt: int = 0) -> bool:
    """Extraction also refuses to retry deterministic input validation failures."""
    if is_cancellation_error(error):
        return False
    message = str(error).lower()
    if any(marker in message for marker in _VALIDATION_MARKERS):
        return False
    return is_retryable_error(error, attempt)
