"""
In-process query cache with TTL expiry and tag-based invalidation.

Shared between the API and the reminder worker to avoid repeated full-table
scans. Each entry carries an expiry and zero or more tags; all entries sharing
a tag can be dropped with a single call when the underlying table changes
(e.g. every new notification invalidates the "notifications" tag).

Usage:
    from shared.cache import get_cache

    cache = get_cache()
    rows = await cache.get_or_set(
        "appointments:confirmed:...",
        fetch_rows,
        ttl_seconds=120,
        tags=["appointments"],
    )
    cache.invalidate_by_tag("appointments")

Expired entries are removed lazily on read and by a background sweep task
started with `await cache.start()`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum as PyEnum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from shared.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# TTLs in seconds per kind of cached data
DEFAULT_TTL_SECONDS = 5 * 60
USER_TTL_SECONDS = 10 * 60
WORKING_HOURS_TTL_SECONDS = 30 * 60
APPOINTMENTS_TTL_SECONDS = 2 * 60  # Appointments change often

# Tags for group invalidation
APPOINTMENTS_TAG = "appointments"
NOTIFICATIONS_TAG = "notifications"


class CacheKeyType(str, PyEnum):
    """Kind of cached data, used to pick a default TTL."""

    USER = "user"
    WORKING_HOURS = "working-hours"
    APPOINTMENT = "appointment"
    DEFAULT = "default"


_TTL_BY_KEY_TYPE: dict[CacheKeyType, float] = {
    CacheKeyType.USER: USER_TTL_SECONDS,
    CacheKeyType.WORKING_HOURS: WORKING_HOURS_TTL_SECONDS,
    CacheKeyType.APPOINTMENT: APPOINTMENTS_TTL_SECONDS,
    CacheKeyType.DEFAULT: DEFAULT_TTL_SECONDS,
}


@dataclass
class CacheItem:
    """A cached payload with its absolute expiry (clock seconds) and tags."""

    data: Any
    expires_at: float
    tags: frozenset[str]


class MemoryCache:
    """
    Key-value store with per-entry TTL and tag-based bulk invalidation.

    Not thread-safe: meant to be shared by coroutines on a single event loop,
    where every operation below runs without yielding.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 600,
        stats_interval_seconds: float = 900,
    ):
        """
        Initialize the cache.

        Args:
            clock: Monotonic time source in seconds (injectable for tests)
            sweep_interval_seconds: Period of the background expiry sweep
            stats_interval_seconds: Period of the cache size log line
        """
        self._items: dict[str, CacheItem] = {}
        self._clock = clock
        self.sweep_interval_seconds = sweep_interval_seconds
        self.stats_interval_seconds = stats_interval_seconds
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def _lookup(self, key: str) -> CacheItem | None:
        item = self._items.get(key)
        if item is None:
            return None
        if item.expires_at <= self._clock():
            del self._items[key]
            return None
        return item

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a cached value.

        Returns `default` when the key is absent or expired; an expired entry
        found here is removed.
        """
        item = self._lookup(key)
        if item is None:
            return default
        return item.data

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not None

    def set(
        self,
        key: str,
        data: Any,
        ttl_seconds: float | None = None,
        tags: Iterable[str] | None = None,
    ) -> None:
        """
        Store a value, replacing any existing entry for the key.

        Args:
            key: Cache key
            data: Value to store (any type, including None)
            ttl_seconds: Lifetime in seconds (default: 5 minutes)
            tags: Group tags used by invalidate_by_tag()
        """
        if ttl_seconds is None:
            ttl_seconds = DEFAULT_TTL_SECONDS
        self._items[key] = CacheItem(
            data=data,
            expires_at=self._clock() + ttl_seconds,
            tags=frozenset(tags or ()),
        )

    def delete(self, key: str) -> None:
        """Remove a single entry. Missing keys are ignored."""
        self._items.pop(key, None)

    def clear(self) -> None:
        """Remove every entry."""
        self._items.clear()

    def invalidate_by_tag(self, tag: str) -> int:
        """
        Remove every entry carrying `tag`.

        Returns:
            Number of entries removed
        """
        keys = [key for key, item in self._items.items() if tag in item.tags]
        for key in keys:
            del self._items[key]
        if keys:
            logger.debug(f"Cache invalidated tag '{tag}': {len(keys)} entries")
        return len(keys)

    def clean_expired_items(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, item in self._items.items() if item.expires_at <= now]
        for key in expired:
            del self._items[key]
        return len(expired)

    @property
    def size(self) -> int:
        """Number of stored entries (expired ones included until swept)."""
        return len(self._items)

    @staticmethod
    def ttl_for_type(key_type: CacheKeyType | str) -> float:
        """Default TTL in seconds for a kind of cached data."""
        try:
            return _TTL_BY_KEY_TYPE[CacheKeyType(key_type)]
        except ValueError:
            return DEFAULT_TTL_SECONDS

    async def get_or_set(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_seconds: float | None = None,
        key_type: CacheKeyType | str | None = None,
        tags: Iterable[str] | None = None,
    ) -> T:
        """
        Return the cached value for `key`, or fetch, store and return it.

        An explicit `ttl_seconds` wins over `key_type`; with neither, the
        default TTL applies. If `fetch_fn` raises, the exception propagates
        and nothing is stored.

        Concurrent callers on the same cold key each run `fetch_fn`.
        """
        item = self._lookup(key)
        if item is not None:
            return item.data

        data = await fetch_fn()

        if ttl_seconds is None:
            ttl_seconds = self.ttl_for_type(key_type) if key_type else DEFAULT_TTL_SECONDS

        self.set(key, data, ttl_seconds, tags)
        return data

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """True while the maintenance tasks are active."""
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start the periodic expiry sweep and size logging. Idempotent."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(self._sweep_loop(), name="cache-sweep"),
            asyncio.create_task(self._stats_loop(), name="cache-stats"),
        ]
        logger.info(
            f"Cache maintenance started | sweep_interval={self.sweep_interval_seconds}s"
        )

    async def stop(self) -> None:
        """Cancel the maintenance tasks and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Cache maintenance stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.clean_expired_items()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired entries")

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval_seconds)
            logger.info(f"Cache size: {self.size} items")


@lru_cache
def get_cache() -> MemoryCache:
    """
    Get the process-wide cache instance.

    Uses lru_cache so the API routes and the scheduler share one store.
    """
    settings = get_settings()
    return MemoryCache(
        sweep_interval_seconds=settings.CACHE_SWEEP_INTERVAL_SECONDS,
        stats_interval_seconds=settings.CACHE_STATS_INTERVAL_SECONDS,
    )
