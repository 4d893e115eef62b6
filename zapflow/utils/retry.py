from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 0.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter, proportional to ``base``."""
    delay = base * (2 ** attempt)
    return delay + random.uniform(0, base * jitter)


async def schedule_retry(attempt: int, base: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base)
    if delay > 0:
        await asyncio.sleep(delay)
