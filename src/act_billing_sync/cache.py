"""
Per-tenant cache with TTL

Holds process-local state keyed by tenant id (bearer tokens, rate
counters). The clock is injectable so tests can move time explicitly
instead of sleeping.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")

Clock = Callable[[], float]

NEVER = float("inf")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now <= self.expires_at


class TenantCache(Generic[K, V]):
    """
    Keyed state shared by every client call in the process.

    Entries expire after a default or per-entry TTL; when the cache is
    full the tenant touched longest ago is dropped. All access goes
    through one lock so token refreshes and rate counters stay
    consistent across the product-fetch worker threads.

    Example:
        tokens = TenantCache[str, CachedToken](ttl_seconds=3600)

        tokens.set("tenant-1", token)
        token = tokens.get("tenant-1")  # token, or None once expired
        tokens.invalidate("tenant-1")
    """

    def __init__(
        self,
        max_size: int = 10000,
        ttl_seconds: float = 0.0,
        clock: Clock | None = None,
    ):
        """
        Args:
            max_size: Maximum number of tenants held
            ttl_seconds: Default lifetime in seconds (0 keeps entries until evicted)
            clock: Returns current time in seconds (defaults to time.time)
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()
        self._counters = {"hits": 0, "misses": 0, "evictions": 0}

    def _deadline(self, ttl_seconds: float | None) -> float:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        return self._clock() + ttl if ttl > 0 else NEVER

    def _lookup(self, key: K) -> CacheEntry[V] | None:
        # Caller holds the lock.
        entry = self._entries.get(key)
        if entry is not None and not entry.is_live(self._clock()):
            del self._entries[key]
            entry = None

        if entry is None:
            self._counters["misses"] += 1
            return None

        self._entries.move_to_end(key)
        self._counters["hits"] += 1
        return entry

    def _store(self, key: K, value: V, expires_at: float) -> None:
        # Caller holds the lock.
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
            self._counters["evictions"] += 1
        self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def get(self, key: K) -> V | None:
        """Return the live value for a tenant, or None."""
        with self._lock:
            entry = self._lookup(key)
            return entry.value if entry else None

    def set(self, key: K, value: V, ttl_seconds: float | None = None) -> None:
        expires_at = self._deadline(ttl_seconds)
        with self._lock:
            self._store(key, value, expires_at)

    def get_or_set(self, key: K, factory: Callable[[], V]) -> V:
        """
        Return the tenant's value, creating it under the lock if absent.

        Two threads asking for the same new tenant get the same object.
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is not None:
                return entry.value

            value = factory()
            self._store(key, value, self._deadline(None))
            return value

    def invalidate(self, key: K) -> bool:
        """Drop a tenant's entry. Returns True if one was held."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        hits = self._counters["hits"]
        lookups = hits + self._counters["misses"]

        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            **self._counters,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
        }
