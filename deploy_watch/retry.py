from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable


async def fixed_interval_attempts(
    attempts: int,
    interval_seconds: float,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncIterator[int]:
    """Yield attempt numbers ``1..attempts``, sleeping ``interval_seconds`` between them.

    The caller breaks out of the ``async for`` on success; falling off the end
    means every attempt was used. There is no sleep after the last attempt.
    """
    total = max(1, int(attempts))
    for attempt in range(1, total + 1):
        yield attempt
        if attempt < total and interval_seconds > 0:
            await sleep(float(interval_seconds))
