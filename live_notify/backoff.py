from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

DEFAULT_BASE_DELAY_SECONDS = 0.1


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    *,
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or ``max_retries`` retries are spent.

    The delay before retry ``n`` (1-based) is ``base_delay_seconds * 2**n``.
    Every exception is retried the same way; the last one is re-raised.
    """
    retries = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception:
            if retries >= max_retries:
                raise
            retries += 1
            await sleep(base_delay_seconds * (2**retries))


@dataclass(slots=True)
class ReconnectPolicy:
    delay_seconds: float

    def backoff(self) -> float:
        return max(0.0, self.delay_seconds)
