from __future__ import annotations

import asyncio
import random

from ..config import RetryConfig


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    cap: float = 30.0,
    jitter: float = 0.0,
) -> float:
    """Compute capped exponential backoff with optional jitter.

    ``attempt`` is the 1-based number of the attempt that just failed.
    """
    delay = min(cap, base * factor ** max(attempt - 1, 0))
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def backoff_for(attempt: int, policy: RetryConfig) -> float:
    """Backoff delay for ``attempt`` under ``policy``."""
    return compute_backoff(
        attempt,
        base=policy.base_delay,
        factor=policy.factor,
        cap=policy.max_delay,
        jitter=policy.jitter,
    )


async def schedule_retry(attempt: int, policy: RetryConfig | None = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = backoff_for(attempt, policy or RetryConfig())
    await asyncio.sleep(delay)
