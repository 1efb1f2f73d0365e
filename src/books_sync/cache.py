"""
Bounded TTL caches for remote lookups.

Contact searches are the most repeated remote call during bulk runs (one
customer, many orders), so results are kept for a few minutes with a hard
size limit.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class BoundedLRUCache(Generic[K, V]):
    """
    Thread-safe LRU cache with size limit and TTL.

    Example:
        cache = BoundedLRUCache[str, RemoteContact](max_size=1000, ttl_seconds=300)
        contact = cache.get_or_load("a@example.com", lambda: lookup("a@example.com"))
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_size: Maximum number of entries
            ttl_seconds: Time-to-live in seconds (0 = no expiration)
            clock: Monotonic time source
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: CacheEntry[V]) -> bool:
        return self.ttl_seconds > 0 and self._clock() > entry.expires_at

    def get(self, key: K) -> V | None:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry):
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: K, value: V) -> None:
        expires_at = (
            self._clock() + self.ttl_seconds
            if self.ttl_seconds > 0
            else float("inf")
        )

        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def get_or_load(self, key: K, loader: Callable[[], V | None]) -> V | None:
        """Cached value, or the loader's result (cached unless None)."""
        value = self.get(key)
        if value is not None:
            return value

        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[V], bool]) -> int:
        """Drop every entry whose value matches ``predicate``."""
        with self._lock:
            stale = [k for k, e in self._entries.items() if predicate(e.value)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
            "evictions": self._evictions,
        }
