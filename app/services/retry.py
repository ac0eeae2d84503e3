"""Caller-side retry for checkout commands.

The coordinator never retries on its own. Only the whole command may be re-run,
so its preconditions are evaluated again against fresh state.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.core.errors import RetryableConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.05,
) -> T:
    """Await ``operation()``, re-running it on RetryableConflictError.

    Waits ``base_delay * 2**n`` plus jitter between attempts. Any other error
    propagates immediately; the last RetryableConflictError is re-raised once
    *attempts* are used up.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except RetryableConflictError:
            if attempt == attempts:
                logger.warning("Giving up after %d attempts", attempts)
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.debug("Retryable conflict on attempt %d, sleeping %.3fs", attempt, delay)
            await asyncio.sleep(delay + random.uniform(0, delay))
    raise AssertionError("unreachable")
