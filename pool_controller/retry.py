"""Bounded retry with exponential backoff for backend operations."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float = 30.0) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return min(base_delay * 2 ** (attempt - 1), max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """
    Call ``operation`` until it succeeds or ``attempts`` calls have failed.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Maximum number of calls (>= 1)
        base_delay: Delay before the first retry; doubles on each retry
        retry_on: Exception types that trigger a retry; others propagate at once
        description: Used in log messages
        sleep: Sleep function, replaceable in tests

    Returns:
        The operation's result

    Raises:
        The last exception raised by ``operation`` once attempts are exhausted
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.warning(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.info(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
    raise ValueError(f"attempts must be >= 1, got {attempts}")
