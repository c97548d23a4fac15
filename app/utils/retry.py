"""Backoff helpers for retrying transient step failures."""

import asyncio
import random


def compute_backoff(attempt: int, base: float = 1.0, jitter: float = 0.5) -> float:
    """Exponential backoff with jitter: ``base * 2**(attempt - 1)`` plus up to ``jitter`` seconds."""
    if base <= 0:
        return 0.0
    delay = base * (2 ** max(attempt - 1, 0))
    return delay + random.uniform(0, jitter)


async def sleep_before_retry(attempt: int, base: float = 1.0) -> float:
    """Sleep for the backoff delay of ``attempt`` and return the delay used."""
    delay = compute_backoff(attempt, base)
    if delay > 0:
        await asyncio.sleep(delay)
    return delay
