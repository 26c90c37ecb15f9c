"""
Bounded LRU Cache

Fixed-capacity key/value store used for card view models and ETags.
Each session owns two independent instances; they never share recency
order, so evicting a card never evicts its ETag and vice versa.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """
    Least-recently-used mapping with a hard capacity.

    Every mutation finishes inside one synchronous call, so no coroutine
    can ever observe the cache above capacity.
    """

    def __init__(self, capacity: int, *, name: str = "cache") -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")

        self._capacity = capacity
        self._name = name
        self._entries: OrderedDict[K, V] = OrderedDict()

        # Stats
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evictions(self) -> int:
        """Total entries dropped for capacity since construction."""
        return self._evictions

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        """Membership test. Does not touch recency."""
        return key in self._entries

    def peek(self, key: K) -> Optional[V]:
        """Return the value without marking it as recently used."""
        return self._entries.get(key)

    def get(self, key: K) -> Optional[V]:
        """Return the value and mark it most recently used, or None."""
        if key not in self._entries:
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        return self._entries[key]

    def set(self, key: K, value: V) -> None:
        """Insert or replace, then evict the single oldest entry if over capacity."""
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = value

        if len(self._entries) > self._capacity:
            evicted_key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug(
                f"{self._name}: evicted {evicted_key!r}",
                extra={"cache": self._name, "size": len(self._entries)},
            )

    def pop(self, key: K) -> Optional[V]:
        """Remove and return the value, or None. Not counted as an eviction."""
        return self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry. Counters are kept for stats."""
        self._entries.clear()

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "size": len(self._entries),
            "capacity": self._capacity,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }
