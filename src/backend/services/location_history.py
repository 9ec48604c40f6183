"""
Per-user login location history.

Each user's recent verified locations live in a single cache entry keyed by
user ID. Entries are created on first verification, appended on every
verification, and expire with the configured time window.
"""

import asyncio
from collections import deque
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from schemas.geo import GeoLocation, LocationEntry
from services.cache_service import CacheService, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ENTRIES = 20


class LocationHistory:
    """Bounded, time-ordered sequence of a user's verified locations."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        entries: Optional[Iterable[LocationEntry]] = None,
    ):
        self.max_entries = max_entries
        self._entries: deque[LocationEntry] = deque(entries or (), maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"LocationHistory(entries={len(self._entries)}, max_entries={self.max_entries})"

    @property
    def entries(self) -> list[LocationEntry]:
        return list(self._entries)

    @property
    def last_entry(self) -> Optional[LocationEntry]:
        return self._entries[-1] if self._entries else None

    @property
    def last_location(self) -> Optional[GeoLocation]:
        entry = self.last_entry
        return entry.location if entry else None

    @property
    def last_timestamp(self) -> Optional[datetime]:
        entry = self.last_entry
        return entry.timestamp if entry else None

    @property
    def has_recent_location(self) -> bool:
        return bool(self._entries)

    def add_location(self, location: GeoLocation, timestamp: Optional[datetime] = None) -> LocationEntry:
        """Append a location; the oldest entry is dropped once the cap is reached."""
        entry = LocationEntry(location=location, timestamp=timestamp or utc_now())
        self._entries.append(entry)
        return entry


class LocationHistoryStore:
    """
    Cache-aside get-or-create store for location histories.

    Concurrent misses for the same user collapse into a single initializer:
    the first caller registers an in-flight future and every other caller
    awaits it, so both end up appending to the same history object.
    """

    KEY_PREFIX = "geo:history:"

    def __init__(
        self,
        cache: CacheService,
        ttl: timedelta = timedelta(hours=24),
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self.cache = cache
        self.ttl = ttl
        self.max_entries = max_entries
        self._inflight: dict[str, asyncio.Future] = {}

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def get_or_create(self, user_id: str) -> LocationHistory:
        """
        Return the cached history for ``user_id``, creating an empty one on a miss.

        Cache read failures are logged and answered with a fresh, uncached
        history so verification can still proceed. If the initializing caller
        is cancelled, a waiting caller takes over the load.
        """
        while True:
            pending = self._inflight.get(user_id)
            if pending is None:
                return await self._load_single_flight(user_id)
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                # Retry only when the initializer was cancelled, not this caller
                if not pending.cancelled() or asyncio.current_task().cancelling():
                    raise
                logger.debug("location_history_initializer_cancelled", user_id=user_id)

    async def _load_single_flight(self, user_id: str) -> LocationHistory:
        # Registered before the first await so no second loader can start
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[user_id] = future
        try:
            history = await self._load_or_create(user_id)
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited failure is not reported at GC time
            future.exception()
            raise
        else:
            future.set_result(history)
            return history
        finally:
            # Cancelled mid-load: release the waiters
            if not future.done():
                future.cancel()
            if self._inflight.get(user_id) is future:
                del self._inflight[user_id]

    async def _load_or_create(self, user_id: str) -> LocationHistory:
        try:
            history = await self.cache.cache_get(self._key(user_id))
        except Exception as e:
            logger.error("location_history_read_failed", user_id=user_id, error=str(e))
            return LocationHistory(max_entries=self.max_entries)

        if isinstance(history, LocationHistory):
            return history

        history = LocationHistory(max_entries=self.max_entries)
        try:
            await self.cache.cache_set(self._key(user_id), history, self.ttl.total_seconds())
            logger.debug("location_history_created", user_id=user_id)
        except Exception as e:
            logger.error("location_history_write_failed", user_id=user_id, error=str(e))
        return history

    async def put(self, user_id: str, history: LocationHistory) -> bool:
        """
        Write a history back, refreshing its TTL. Last writer wins.

        Returns False instead of raising when the cache is unavailable.
        """
        try:
            return await self.cache.cache_set(self._key(user_id), history, self.ttl.total_seconds())
        except Exception as e:
            logger.error("location_history_write_failed", user_id=user_id, error=str(e))
            return False

    async def evict(self, user_id: str) -> bool:
        """Forget a user's history, e.g. after a credential reset."""
        try:
            return await self.cache.cache_delete(self._key(user_id))
        except Exception as e:
            logger.error("location_history_evict_failed", user_id=user_id, error=str(e))
            return False
