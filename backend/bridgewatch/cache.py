"""In-memory TTL cache with stale-while-revalidate reads and in-flight fetch dedup.

One instance is created by the application and shared by every consumer.
All bookkeeping runs on the event loop thread; the only suspension point
inside the cache is awaiting the shared fetch task, so the check for fresh
data and the registration of a new fetch cannot interleave with another
caller for the same key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("bridgewatch.cache")

T = TypeVar("T")

DEFAULT_STALE_RATIO = 0.8


def _mark_exception_retrieved(task: asyncio.Task) -> None:
    # Waiters that were all cancelled never read the failure.
    if not task.cancelled():
        task.exception()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    created_at: float
    ttl_seconds: float
    stale_seconds: float

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass(frozen=True)
class CacheLookup(Generic[T]):
    data: Optional[T]
    is_stale: bool = False


class CacheStore(Generic[T]):
    def __init__(
        self,
        stale_ratio: float = DEFAULT_STALE_RATIO,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 0 < stale_ratio <= 1:
            raise ValueError(f"stale_ratio must be in (0, 1], got {stale_ratio}")
        self._stale_ratio = stale_ratio
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._in_flight: dict[str, asyncio.Task[T]] = {}

    def set(self, key: str, data: T, ttl_seconds: float, stale_seconds: Optional[float] = None) -> None:
        """Replace the entry for *key*. ``stale_seconds`` defaults to a fraction of the TTL."""
        if stale_seconds is None or stale_seconds <= 0:
            stale_seconds = ttl_seconds * self._stale_ratio
        self._entries[key] = CacheEntry(
            data=data,
            created_at=self._clock(),
            ttl_seconds=ttl_seconds,
            stale_seconds=min(stale_seconds, ttl_seconds),
        )

    def _unexpired(self, key: str) -> tuple[Optional[CacheEntry[T]], float]:
        entry = self._entries.get(key)
        if entry is None:
            return None, 0.0
        age = entry.age(self._clock())
        if age > entry.ttl_seconds:
            del self._entries[key]
            logger.debug("Evicted expired cache entry key=%s age=%.1fs", key, age)
            return None, age
        return entry, age

    def get(self, key: str) -> Optional[T]:
        entry, _ = self._unexpired(key)
        return entry.data if entry is not None else None

    def get_with_stale(self, key: str) -> CacheLookup[T]:
        """Return the unexpired value for *key* and whether it has passed its stale time."""
        entry, age = self._unexpired(key)
        if entry is None:
            return CacheLookup(data=None, is_stale=False)
        return CacheLookup(data=entry.data, is_stale=age > entry.stale_seconds)

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_seconds: float,
        stale_seconds: Optional[float] = None,
    ) -> T:
        """Return fresh data for *key*, running at most one ``fetch_fn`` per key at a time.

        Concurrent callers for a key with no usable entry all await the same
        fetch and receive its result, or its exception.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        return await self._shared_fetch(key, fetch_fn, ttl_seconds, stale_seconds)

    async def refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_seconds: float,
        stale_seconds: Optional[float] = None,
    ) -> T:
        """Re-fetch *key* while its current entry stays readable.

        Joins a fetch already in flight for the key instead of starting another,
        and follows the same store rules as :meth:`get_or_fetch`.
        """
        return await self._shared_fetch(key, fetch_fn, ttl_seconds, stale_seconds)

    async def _shared_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_seconds: float,
        stale_seconds: Optional[float],
    ) -> T:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._fetch_and_store(key, fetch_fn, ttl_seconds, stale_seconds),
                name=f"cache-fetch:{key}",
            )
            task.add_done_callback(_mark_exception_retrieved)
            self._in_flight[key] = task
        else:
            logger.debug("Joining in-flight fetch key=%s", key)

        # A cancelled waiter must not cancel the fetch other callers share.
        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_seconds: float,
        stale_seconds: Optional[float],
    ) -> T:
        this_task = asyncio.current_task()
        try:
            data = await fetch_fn()
        except Exception:
            logger.debug("Fetch failed key=%s", key)
            raise
        finally:
            owned = self._in_flight.get(key) is this_task
            if owned:
                del self._in_flight[key]

        # delete()/clear() during the fetch drop the marker; the late result is not stored.
        if owned:
            self.set(key, data, ttl_seconds, stale_seconds)
        return data

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._in_flight.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._in_flight.clear()

    def summary(self) -> dict[str, dict[str, Any]]:
        """Metadata only, safe to expose from a health endpoint."""
        now = self._clock()
        return {
            key: {
                "age_s": round(entry.age(now), 1),
                "ttl_s": entry.ttl_seconds,
                "stale": entry.age(now) > entry.stale_seconds,
                "expired": entry.age(now) > entry.ttl_seconds,
            }
            for key, entry in self._entries.items()
        }
