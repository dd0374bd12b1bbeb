"""
In-memory TTL cache with bounded size.

Entries expire lazily: they are purged when read, when the cache is sized,
and in a batch sweep before any eviction. Purged values are retired to a
bounded stale area that only get_stale reads. When the cache is still full
after the sweep, the entry with the fewest reads is evicted, oldest first
on ties. Access count is the primary signal because reads are infrequent
and bursty, so this is an approximation of LRU rather than strict recency.
"""

import copy
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Generic, Optional, TypeVar


V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """A cached value and its bookkeeping"""
    value: V
    created_at: float
    expires_at: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache(Generic[V]):
    """
    Key/value store with per-entry expiry.

    Values are deep-copied on the way in and on the way out so callers can
    never mutate what other callers will read. Writes are serialized.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: int = 1000,
        name: str = "cache",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._retired: "OrderedDict[str, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.logger = logging.getLogger(__name__)

    def get(self, key: str) -> Optional[V]:
        """Return a copy of the value, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.is_expired(self._clock()):
                self._retire(key)
                self.misses += 1
                return None
            entry.access_count += 1
            self.hits += 1
            return copy.deepcopy(entry.value)

    def get_stale(self, key: str) -> Optional[V]:
        """Return a copy of the last value stored under key, even if it has expired."""
        with self._lock:
            entry = self._entries.get(key) or self._retired.get(key)
            if entry is None:
                return None
            age = self._clock() - entry.created_at
            self.logger.warning(f"Stale read from {self.name} for '{key}' (age: {age:.1f}s)")
            return copy.deepcopy(entry.value)

    def set(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        time_to_live = self.default_ttl if ttl is None else ttl
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._make_room()
            self._retired.pop(key, None)
            self._entries[key] = CacheEntry(
                value=copy.deepcopy(value),
                created_at=now,
                expires_at=now + time_to_live,
            )

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._retire(key)
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            self._retired.pop(key, None)
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._retired.clear()

    def cleanup(self) -> int:
        """Retire every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._retire(key)
            if expired:
                self.logger.debug(f"Swept {len(expired)} expired entries from {self.name}")
            return len(expired)

    def size(self) -> int:
        with self._lock:
            self.cleanup()
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self.cleanup()
            created = [e.created_at for e in self._entries.values()]
            lookups = self.hits + self.misses
            return {
                'size': len(self._entries),
                'max_size': self.max_size,
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'hit_rate': round(self.hits / lookups * 100.0, 2) if lookups else 0.0,
                'oldest_entry': datetime.fromtimestamp(min(created)) if created else None,
                'newest_entry': datetime.fromtimestamp(max(created)) if created else None,
            }

    def _retire(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._retired[key] = entry
        self._retired.move_to_end(key)
        while len(self._retired) > self.max_size:
            self._retired.popitem(last=False)

    def _make_room(self) -> None:
        self.cleanup()
        while len(self._entries) >= self.max_size:
            victim = min(
                self._entries.items(),
                key=lambda item: (item[1].access_count, item[1].created_at),
            )[0]
            del self._entries[victim]
            self.evictions += 1
            self.logger.debug(f"Evicted least used entry '{victim}' from {self.name}")
