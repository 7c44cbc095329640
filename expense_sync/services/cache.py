"""
CacheManager - In-memory response cache with caller-supplied max-age.

Features:
- Canonical keys, stable under parameter reordering
- Freshness decided per read by the caller's max-age
- Stale lookups for degraded fallback
- Sweep of entries past an absolute age ceiling
- Oldest-first eviction when full
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    data: T
    timestamp: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp

    def is_fresh(self, now: datetime, max_age: timedelta) -> bool:
        """Check if entry is within the caller's max-age."""
        return self.age(now) <= max_age


@dataclass
class CacheResult(Generic[T]):
    """Result from cache lookup."""

    data: T
    from_cache: str  # 'memory' | 'stale'
    is_stale: bool


class CacheManager:
    """
    Response cache keyed by (path, params).

    Usage:
        cache = CacheManager()

        # Try to get from cache
        result = cache.get("/expenses", {"page": 1}, timedelta(seconds=30))
        if result:
            return result.data

        # Fetch fresh data and cache it
        data = await fetch_data()
        cache.set("/expenses", {"page": 1}, data)

    All operations are synchronous: on a single event loop nothing can
    interleave with them.
    """

    def __init__(
        self,
        max_size: int = 500,
        max_entry_age: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._memory: dict[str, CacheEntry[Any]] = {}
        self._max_size = max_size
        self._max_entry_age = max_entry_age
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    @staticmethod
    def generate_key(path: str, params: dict[str, Any] | None = None) -> str:
        """Generate a canonical cache key from path and params."""
        if params:
            canonical = json.dumps(
                params, sort_keys=True, separators=(",", ":"), default=str
            )
            full_key = f"{path}?{canonical}"
        else:
            full_key = path

        # Hash long keys
        if len(full_key) > 200:
            hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
            return f"{path[:50]}#{hash_val}"

        return full_key

    def get(
        self,
        path: str,
        params: dict[str, Any] | None,
        max_age: timedelta,
    ) -> CacheResult[Any] | None:
        """
        Get value from cache.

        Returns CacheResult if stored no longer than max_age ago. An older
        entry is evicted and None returned.
        """
        return self.lookup(self.generate_key(path, params), max_age)

    def lookup(
        self,
        key: str,
        max_age: timedelta,
        stale_max_age: timedelta | None = None,
    ) -> CacheResult[Any] | None:
        """
        Key-level lookup with an optional stale window.

        Within max_age the entry is fresh. Past max_age but within
        stale_max_age it is returned marked stale. Past both it is evicted.
        """
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return None

        now = self._clock()
        if entry.is_fresh(now, max_age):
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")
            return CacheResult(data=entry.data, from_cache="memory", is_stale=False)

        if stale_max_age is not None and entry.is_fresh(now, stale_max_age):
            self._stats.stale_hits += 1
            self._log(f"STALE HIT: {key[:50]}")
            return CacheResult(data=entry.data, from_cache="stale", is_stale=True)

        del self._memory[key]
        self._stats.misses += 1
        self._log(f"EXPIRED: {key[:50]}")
        return None

    def set(self, path: str, params: dict[str, Any] | None, data: Any) -> None:
        """Store data for (path, params), overwriting any previous entry."""
        self.set_key(self.generate_key(path, params), data)

    def set_key(self, key: str, data: Any) -> None:
        entry = CacheEntry(data=data, timestamp=self._clock())

        if len(self._memory) >= self._max_size and key not in self._memory:
            self._evict_oldest()

        self._memory[key] = entry
        self._log(f"SET: {key[:50]}")

    def delete(self, path: str, params: dict[str, Any] | None = None) -> bool:
        """Delete a specific entry from cache."""
        key = self.generate_key(path, params)
        if key in self._memory:
            del self._memory[key]
            self._log(f"DELETE: {key[:50]}")
            return True
        return False

    def invalidate_all(self) -> int:
        """Clear every entry. Returns count of removed entries."""
        count = len(self._memory)
        self._memory.clear()
        self._log(f"CLEAR: {count} entries removed")
        return count

    def sweep(self) -> int:
        """Remove entries older than the absolute ceiling. Returns count of removed entries."""
        now = self._clock()
        expired_keys = [
            k for k, v in self._memory.items() if not v.is_fresh(now, self._max_entry_age)
        ]
        for key in expired_keys:
            del self._memory[key]

        if expired_keys:
            self._log(f"SWEEP: {len(expired_keys)} old entries removed")

        return len(expired_keys)

    def keys(self) -> list[str]:
        return list(self._memory.keys())

    def __len__(self) -> int:
        return len(self._memory)

    def _evict_oldest(self) -> None:
        """Evict the oldest entry."""
        if not self._memory:
            return

        oldest_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].timestamp,
        )
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
