from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float]
    access_count: int = 0
    last_accessed: float = 0.0


class CacheManager:
    """In-memory LRU cache with optional per-entry expiration.

    Entries expire lazily on read, can be purged in bulk with ``cleanup`` and
    are evicted least-recently-used first once ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock or time.monotonic
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = ttl if ttl is not None else self.default_ttl
        expires_at = now + ttl if ttl else None
        self._store[key] = CacheEntry(value=value, expires_at=expires_at, last_accessed=now)
        self._store.move_to_end(key)
        self.enforce_size()

    def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None
        now = self._clock()
        if entry.expires_at is not None and entry.expires_at <= now:
            self._store.pop(key, None)
            self.misses += 1
            return None
        entry.access_count += 1
        entry.last_accessed = now
        self._store.move_to_end(key)
        self.hits += 1
        return entry.value

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired_keys = [
            key for key, entry in self._store.items() if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired_keys:
            self._store.pop(key, None)
        return len(expired_keys)

    def enforce_size(self) -> int:
        """Evict least-recently-used entries until the size limit holds."""
        if self.max_entries is None:
            return 0
        evicted = 0
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)
            evicted += 1
        self.evictions += evicted
        return evicted

    def maintain(self) -> Dict[str, int]:
        return {"expired": self.cleanup(), "evicted": self.enforce_size()}

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._store),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return key in self._store
