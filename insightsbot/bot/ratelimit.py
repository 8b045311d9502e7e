"""Token-bucket rate limiter for outbound platform calls.

Telegram allows roughly 30 messages per second per bot. All senders in the
process share one bucket (see ``shared_limiter``); it is the only mutable
state shared between concurrently dispatched events.
"""

import asyncio
import time
from typing import Callable

from loguru import logger

from insightsbot.bot.errors import CancellationError

DEFAULT_CAPACITY = 30
DEFAULT_REFILL_RATE = 30.0  # tokens per second


class RateLimiter:
    """Token bucket with exact accounting under a single lock."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def _wait_for_token(self) -> None:
        while True:
            async with self._lock:
                if self.try_acquire():
                    return
                wait = (1 - self._tokens) / self.refill_rate
            await asyncio.sleep(wait)

    async def acquire(self, timeout: float | None = None) -> None:
        """Wait until a token is available.

        Raises CancellationError if ``timeout`` seconds pass first. Task
        cancellation propagates unchanged. No token is consumed on either.
        """
        if timeout is None:
            await self._wait_for_token()
            return
        try:
            await asyncio.wait_for(self._wait_for_token(), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Rate limiter wait exceeded {timeout}s")
            raise CancellationError(f"No send slot available within {timeout}s") from None


_shared: RateLimiter | None = None


def shared_limiter(
    capacity: int = DEFAULT_CAPACITY,
    refill_rate: float = DEFAULT_REFILL_RATE,
) -> RateLimiter:
    """Return the process-wide limiter, creating it on first use.

    Later calls get the same instance; differing settings are logged and ignored.
    """
    global _shared
    if _shared is None:
        _shared = RateLimiter(capacity=capacity, refill_rate=refill_rate)
    elif (_shared.capacity, _shared.refill_rate) != (capacity, refill_rate):
        logger.warning(
            f"Shared rate limiter already runs at capacity={_shared.capacity}, "
            f"refill_rate={_shared.refill_rate}; ignoring capacity={capacity}, refill_rate={refill_rate}"
        )
    return _shared
