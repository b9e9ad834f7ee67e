from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def retry_delay(
    attempt: int, delay: float, strategy: str = "exponential", jitter: float = 0.0
) -> float:
    """Delay before retry number ``attempt`` (1-based) for a base ``delay``."""
    if delay <= 0:
        return 0.0
    if strategy == "fixed":
        return delay + (random.uniform(0, jitter) if jitter else 0.0)
    return delay * compute_backoff(attempt - 1, base=2, jitter=0) + (
        random.uniform(0, jitter) if jitter else 0.0
    )


async def schedule_retry(
    attempt: int,
    delay: float,
    strategy: str = "exponential",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> float:
    """Sleep for the computed delay before retrying and return it."""
    seconds = retry_delay(attempt, delay, strategy)
    if seconds:
        await sleep(seconds)
    return seconds
