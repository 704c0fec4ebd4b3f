"""Bounded, time-expiring cache shared by every lookup of a resolver instance."""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached value together with its bookkeeping."""

    value: str
    created_at: float
    access_count: int
    last_accessed: float


@dataclass
class CacheStats:
    """Point-in-time summary of cache occupancy and usage."""

    size: int
    hits: int
    misses: int
    average_access_count: float
    oldest_entry_age: float
    newest_entry_age: float

    @property
    def hit_rate(self) -> float:
        """Percentage of reads served from the cache."""
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0


class BoundedCache:
    """
    Key -> string store with lazy TTL expiry, LRU capacity eviction and
    invalidation by path fragment.

    Expiry and capacity are independent: an entry may be evicted for capacity
    long before its time-to-live lapses. Values are immutable strings, so
    concurrent tasks racing on the same key can at worst overwrite each other
    with an equivalent value.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_entries: int = 1000,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of an entry, measured from its insertion
            max_entries: Capacity before the least recently accessed entry
                is evicted
            sweep_interval_seconds: Period of the proactive expiry sweep
            clock: Monotonic time source (injectable for tests)
        """
        if max_entries < 1:
            raise ValueError("Cache capacity must be at least 1")

        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        # Least recently accessed first
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._sweeper: asyncio.Task | None = None
        self._logger = logger.getChild(self.__class__.__name__)

    def get(self, key: str) -> str | None:
        """
        Return the cached value, or None when absent or expired.

        Args:
            key: Cache key

        Returns:
            Cached value if present and fresh, None otherwise
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if now - entry.created_at > self._ttl:
            del self._entries[key]
            self._misses += 1
            self._logger.debug(f"Cache entry expired: {key}")
            return None

        entry.access_count += 1
        entry.last_accessed = now
        self._entries.move_to_end(key)
        self._hits += 1
        self._logger.debug(f"Cache hit: {key}")
        return entry.value

    def set(self, key: str, value: str) -> None:
        """
        Store a value, evicting the least recently accessed entry when full.

        Args:
            key: Cache key
            value: Value to store
        """
        if key not in self._entries and len(self._entries) >= self._max_entries:
            self._evict_least_recently_used()

        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            created_at=now,
            access_count=1,
            last_accessed=now,
        )
        self._entries.move_to_end(key)
        self._logger.debug(f"Cache set: {key}")

    def invalidate(self, path_fragment: str) -> int:
        """
        Remove every entry whose key contains the given path fragment.

        Args:
            path_fragment: Path (or part of one) whose derived entries are stale

        Returns:
            Number of removed entries
        """
        if not path_fragment:
            return 0

        stale = [key for key in self._entries if path_fragment in key]
        for key in stale:
            del self._entries[key]

        if stale:
            self._logger.debug(
                f"Invalidated {len(stale)} cache entries for: {path_fragment}"
            )
        return len(stale)

    def clear(self) -> None:
        """Remove every entry and reset the usage counters."""
        size = len(self._entries)
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._logger.info(f"Cache cleared, removed {size} entries")

    def sweep(self) -> int:
        """
        Proactively remove expired entries.

        Returns:
            Number of removed entries
        """
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.created_at > self._ttl
        ]
        for key in expired:
            del self._entries[key]

        if expired:
            self._logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    def stats(self) -> CacheStats:
        """Summarize the current cache contents."""
        now = self._clock()
        entries = list(self._entries.values())
        total_access = sum(entry.access_count for entry in entries)
        return CacheStats(
            size=len(entries),
            hits=self._hits,
            misses=self._misses,
            average_access_count=(
                round(total_access / len(entries), 2) if entries else 0.0
            ),
            oldest_entry_age=(
                now - min(entry.created_at for entry in entries) if entries else 0.0
            ),
            newest_entry_age=(
                now - max(entry.created_at for entry in entries) if entries else 0.0
            ),
        )

    # --- periodic sweep ---

    def start_sweeper(self) -> None:
        """
        Start the periodic sweep on the running event loop.

        Raises:
            RuntimeError: If called outside of a running event loop
        """
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())
        self._logger.debug(
            f"Cache sweeper started (every {self._sweep_interval} seconds)"
        )

    async def stop_sweeper(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        self._logger.debug("Cache sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def _evict_least_recently_used(self) -> None:
        lru_key, _ = self._entries.popitem(last=False)
        self._logger.debug(f"Evicted LRU cache entry: {lru_key}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
