from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 1.0, jitter: float = 0.0) -> float:
    """Compute exponential backoff for ``attempt`` (1-based) with optional jitter."""
    delay = base * 2 ** max(0, attempt - 1)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def schedule_retry(attempt: int, base: float = 1.0, jitter: float = 0.0) -> float:
    """Sleep for the computed backoff delay before retrying and return it."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    if delay > 0:
        await asyncio.sleep(delay)
    return delay
