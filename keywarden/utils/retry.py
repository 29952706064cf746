from __future__ import annotations

import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..clock import Clock
from ..errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 0.2, jitter: float = 0.1) -> float:
    """Compute exponential backoff with jitter."""
    delay = base * (2**attempt)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, clock: Clock) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt)
    await clock.sleep(delay)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    clock: Clock,
    attempts: int = 3,
    description: Optional[str] = None,
    retry_on: Tuple[Type[BaseException], ...] = (ConflictError,),
) -> T:
    """Run ``operation`` and retry it a bounded number of times.

    ``operation`` must re-read whatever state it depends on before writing,
    so every attempt works against a fresh concurrency token and an
    ambiguous earlier attempt is detected rather than repeated blindly.
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts - 1:
                raise
            logger.warning(
                f"{type(exc).__name__} during {description or 'store update'}, "
                f"retrying ({attempt + 1}/{attempts})"
            )
            await schedule_retry(attempt, clock)
    raise AssertionError("unreachable")
