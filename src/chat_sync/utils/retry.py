"""
Bounded retry with exponential backoff for backend calls.

Only 'NetworkError' is retried by default: auth, validation and not-found
failures are deterministic and are re-raised on the first attempt.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from chat_sync.errors import NetworkError

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number 'attempt' (1-based): base, 2*base, 4*base, ... capped at 'maximum'."""
    return min(maximum, base * 2 ** (attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: tuple[type[Exception], ...] = (NetworkError,),
    description: str = "operation",
) -> T:
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts:
                logger.warning(f"{description} failed after {attempt} attempt(s): {exc}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(f"{description} failed ({exc}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
    raise RuntimeError("retry_async called with attempts < 1")
