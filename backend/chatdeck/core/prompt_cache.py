"""
Single-slot TTL cache for the assembled global system prompt.

One value plus the time it was stored. Readers go through get_or_refresh();
admin write paths call invalidate() so a new deployment is picked up on the
next request instead of after the TTL runs out.
"""
import asyncio
import time
from typing import Awaitable, Callable

from loguru import logger


class PromptCache:
    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._value: str | None = None
        self._stored_at: float = 0.0
        self._lock = asyncio.Lock()

    @property
    def stale_value(self) -> str | None:
        """Last stored value regardless of age; None after invalidate()."""
        return self._value

    def age(self) -> float:
        if self._value is None:
            return 0.0
        return self._clock() - self._stored_at

    def is_valid(self) -> bool:
        return self._value is not None and self.age() < self.ttl

    def store(self, value: str) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        if self._value is not None:
            logger.info("[prompt-cache] invalidated ({} chars dropped)", len(self._value))
        self._value = None
        self._stored_at = 0.0

    async def get_or_refresh(self, loader: Callable[[], Awaitable[str]]) -> str:
        """
        Return the cached value while it is fresh, otherwise await loader(),
        store its result and return it. Loader errors propagate; the previous
        value stays available through stale_value.
        """
        if self.is_valid():
            logger.debug("[prompt-cache] hit, age={}s", round(self.age()))
            return self._value

        async with self._lock:
            # Another waiter may have refreshed while we queued on the lock.
            if self.is_valid():
                return self._value
            logger.debug("[prompt-cache] miss, loading")
            value = await loader()
            self.store(value)
            return value

    def status(self) -> dict:
        return {
            "cached": self._value is not None,
            "valid": self.is_valid(),
            "age": round(self.age()),
            "ttl": round(self.ttl),
            "size": len(self._value) if self._value else 0,
        }
