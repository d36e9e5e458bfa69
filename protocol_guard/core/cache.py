"""
In-memory TTL Cache for Protocol Lookups

Second tier of the fallback chain. Entries are keyed by request signature
(e.g. "protocol:1210", "search:<hash>") and expire after a TTL (default 1h).
LRU eviction keeps the map bounded. All access goes through an asyncio.Lock
because the cache is shared by concurrent request paths.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Single cache entry with expiry metadata"""

    key: str
    value: Any
    created_at: float
    ttl_seconds: float
    hits: int = field(default=0)

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


class CacheStatistics:
    """Statistics for cache performance"""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Cache hit rate as percentage"""
        if self.total_requests == 0:
            return 0.0
        return (self.hits / self.total_requests) * 100

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "total_requests": self.total_requests,
            "hit_rate_percent": round(self.hit_rate, 2),
        }


class TTLCache:
    """Lock-protected LRU cache with per-entry TTL."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.stats = CacheStatistics()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self.stats.expirations += 1
                self.stats.misses += 1
                return None

            self._entries.move_to_end(key)
            entry.hits += 1
            self.stats.hits += 1
            return entry.value

    async def contains(self, key: str) -> bool:
        async with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        async with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=self._clock(),
                ttl_seconds=ttl_seconds if ttl_seconds is not None else self.ttl_seconds,
            )
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self.stats.evictions += 1
                logger.debug(f"Cache evicted LRU entry {evicted}")

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix; returns count."""
        async with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.info(f"Cache invalidated {len(keys)} entries with prefix '{prefix}'")
        return len(keys)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self.stats.expirations += len(expired)
        return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            **self.stats.to_dict(),
        }
