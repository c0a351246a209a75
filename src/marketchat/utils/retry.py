"""Bounded exponential backoff for gateway read paths."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 8.0) -> float:
    """
    Delay before retry number `attempt` (0-indexed).

    Doubles per attempt, capped at `max_delay`, plus up to 10% jitter.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.uniform(0, 0.1 * delay)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    label: str = "request",
) -> T:
    """
    Await `func()` retrying only TransientNetworkError.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        attempts: Total attempts, including the first
        base_delay: Base delay between attempts in seconds
        max_delay: Cap on a single delay

    Raises:
        The last TransientNetworkError once attempts are exhausted; any other
        error immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await func()
        except TransientNetworkError as e:
            if attempt == attempts - 1:
                logger.warning("%s failed after %d attempt(s): %s", label, attempts, e)
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info("%s failed (%s); retry %d/%d in %.2fs", label, e, attempt + 1, attempts - 1, delay)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
