"""
In-process cache with per-entry TTL.

Backs the per-user location history and the ASN reputation counters.
Provides:
- Namespaced keys
- Expire-after-write TTL, checked lazily on read
- A bounded entry count (soonest-expiring entries evicted first)
"""

import heapq
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheService:
    """
    Async key/value cache with TTL.

    Values are stored by reference; callers that mutate a cached object and
    write it back get last-writer-wins semantics.
    """

    PREFIX_CACHE = "cache:"

    def __init__(
        self,
        max_entries: int = 100_000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_entries = max_entries
        self._clock = clock
        self._in_memory_cache: dict[str, tuple[Any, datetime]] = {}  # key -> (value, expires_at)

    def __len__(self) -> int:
        return len(self._in_memory_cache)

    async def cache_set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float,
    ) -> bool:
        """Set a value in cache with TTL."""
        cache_key = f"{self.PREFIX_CACHE}{key}"
        self._in_memory_cache[cache_key] = (
            value,
            self._clock() + timedelta(seconds=ttl_seconds),
        )
        if len(self._in_memory_cache) > self.max_entries:
            self._evict()
        return True

    async def cache_get(self, key: str) -> Optional[Any]:
        """Get a value from cache."""
        cache_key = f"{self.PREFIX_CACHE}{key}"
        if cache_key in self._in_memory_cache:
            value, expires_at = self._in_memory_cache[cache_key]
            if self._clock() < expires_at:
                return value
            del self._in_memory_cache[cache_key]
        return None

    async def cache_delete(self, key: str) -> bool:
        """Delete a value from cache."""
        cache_key = f"{self.PREFIX_CACHE}{key}"
        if cache_key in self._in_memory_cache:
            del self._in_memory_cache[cache_key]
        return True

    def _evict(self) -> None:
        """Drop expired entries, then the soonest-expiring ones."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._in_memory_cache.items() if expires_at <= now]
        for key in expired:
            del self._in_memory_cache[key]

        # Trim below the cap so a full cache is not rescanned on every write
        target = max(1, int(self.max_entries * 0.9))
        overflow = len(self._in_memory_cache) - target
        if overflow > 0:
            victims = heapq.nsmallest(
                overflow,
                self._in_memory_cache.items(),
                key=lambda item: item[1][1],
            )
            for key, _ in victims:
                del self._in_memory_cache[key]
            logger.debug("cache_evicted", evicted=len(expired) + overflow)
