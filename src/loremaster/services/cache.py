"""Small LRU cache for lookups against remote tool backends.

Resource and search backends answer the same query repeatedly within a
conversation; caching the decoded response keeps repeated tool calls off the
network.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

__all__ = [
    "LookupCache",
    "CacheConfig",
    "CacheStats",
]

LOGGER = logging.getLogger(__name__)

V = TypeVar("V")


# -----------------------------------------------------------------------------
# Cache Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CacheConfig:
    """Configuration for a lookup cache.

    Attributes:
        max_entries: Maximum number of keys kept.
        ttl_seconds: Time-to-live of an entry in seconds (0 = no expiry).
        track_stats: Whether to count hits and misses.
    """

    max_entries: int = 128
    ttl_seconds: float = 120.0
    track_stats: bool = True


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    created_at: float

    def is_expired(self, ttl_seconds: float, now: float) -> bool:
        if ttl_seconds <= 0:
            return False
        return now - self.created_at > ttl_seconds


# -----------------------------------------------------------------------------
# Cache Statistics
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class CacheStats:
    """Counters for cache operations."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
        }


# -----------------------------------------------------------------------------
# Lookup Cache
# -----------------------------------------------------------------------------


class LookupCache(Generic[V]):
    """Thread-safe LRU cache with optional TTL expiry.

    Example:
        >>> cache: LookupCache[dict] = LookupCache()
        >>> cache.set(("images", "sword"), {"total": 3})
        >>> cache.get(("images", "sword"))
        {'total': 3}
    """

    def __init__(self, config: CacheConfig | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._config = config or CacheConfig()
        self._entries: OrderedDict[Hashable, _Entry[V]] = OrderedDict()
        self._lock = threading.RLock()
        self._stats = CacheStats() if self._config.track_stats else None

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def stats(self) -> CacheStats | None:
        """Cache statistics (None if tracking disabled)."""
        return self._stats

    def get(self, key: Hashable) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                if self._stats:
                    self._stats.misses += 1
                return None
            if entry.is_expired(self._config.ttl_seconds, self._clock()):
                del self._entries[key]
                if self._stats:
                    self._stats.expirations += 1
                    self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            if self._stats:
                self._stats.hits += 1
            return entry.value

    def set(self, key: Hashable, value: V) -> None:
        """Store ``value``, evicting the least recently used key when full."""
        with self._lock:
            if key in self._entries:
                self._entries[key] = _Entry(value, self._clock())
                self._entries.move_to_end(key)
                return
            while self._entries and len(self._entries) >= max(1, self._config.max_entries):
                evicted, _ = self._entries.popitem(last=False)
                if self._stats:
                    self._stats.evictions += 1
                LOGGER.debug("Evicted lookup cache entry %r", evicted)
            self._entries[key] = _Entry(value, self._clock())

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def get_or_load(self, key: Hashable, loader: Callable[[], V | None]) -> V | None:
        """Return the cached value or store whatever ``loader`` produces."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
