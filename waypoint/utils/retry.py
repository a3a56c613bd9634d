from __future__ import annotations

import asyncio
import random
from typing import Optional

from ..config import RetryConfig
from ..errors import PermanentStepError, TransientStepError

TRANSIENT_MARKERS = ("timeout", "timed out", "connection", "network", "rate limit", "503")


def compute_backoff(attempt: int, policy: Optional[RetryConfig] = None) -> float:
    """Compute exponential backoff with proportional jitter.

    ``attempt`` is zero-based: the first retry waits ``initial_delay``.
    """
    policy = policy or RetryConfig()
    delay = min(policy.initial_delay * policy.multiplier**attempt, policy.max_delay)
    if policy.jitter:
        delay *= 1 + random.uniform(-policy.jitter, policy.jitter)
    return max(delay, 0.0)


async def schedule_retry(attempt: int, policy: Optional[RetryConfig] = None) -> float:
    """Sleep for computed backoff delay before retrying; return the delay."""
    delay = compute_backoff(attempt, policy)
    await asyncio.sleep(delay)
    return delay


def classify_error(error: BaseException) -> str:
    """Return ``"transient"`` or ``"permanent"`` for a step failure."""
    if isinstance(error, TransientStepError):
        return "transient"
    if isinstance(error, PermanentStepError):
        return "permanent"
    if isinstance(error, (TimeoutError, ConnectionError, asyncio.TimeoutError)):
        return "transient"
    message = str(error).lower()
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return "transient"
    return "permanent"
