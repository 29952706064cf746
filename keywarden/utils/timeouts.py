from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from ..errors import OperationTimeoutError

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await ``awaitable`` and surface a timeout as :class:`OperationTimeoutError`."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except OperationTimeoutError:
        raise
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(operation, timeout) from exc
