"""Time source used by orchestrators and the consistency monitor."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Wall clock, monotonic clock and a sleep that can be faked in tests."""

    def now(self) -> datetime:
        """Return the current UTC time."""

    def monotonic(self) -> float:
        """Return a monotonic reading in seconds."""

    async def sleep(self, seconds: float) -> None:
        """Suspend for ``seconds``."""


class SystemClock:
    """Clock backed by the real system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def elapsed_ms(clock: Clock, started: float) -> int:
    """Milliseconds elapsed on ``clock`` since the monotonic reading ``started``."""
    return int(round((clock.monotonic() - started) * 1000))
