"""Generic thread-safe TTL cache with hit/miss statistics."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

__all__ = ["CacheEntry", "CacheStats", "TTLCache"]

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    key: str
    value: V
    inserted_at: float
    ttl: Optional[float] = None

    def expired(self, now: float) -> bool:
        return self.ttl is not None and now - self.inserted_at >= self.ttl


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int

    def to_dict(self) -> Dict[str, int]:
        return {"entries": self.entries, "hits": self.hits, "misses": self.misses}


class TTLCache(Generic[V]):
    """Key/value cache whose entries expire after a time-to-live.

    Reads of an expired entry count as misses and evict it. Entries are
    replaced whole under the lock, so readers never see a half-written value.

    Example:
        cache: TTLCache[str] = TTLCache("path", default_ttl=300)
        cache.put("/docs/a.txt", "2877651")
        cache.get("/docs/a.txt")  # "2877651" until five minutes pass
    """

    def __init__(
        self,
        name: str,
        default_ttl: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        is_valid: Optional[Callable[[V], bool]] = None,
    ) -> None:
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        # Extra per-value expiry check (e.g. a URL's embedded deadline)
        self._is_valid = is_valid
        self._entries: Dict[str, CacheEntry[V]] = {}
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        """Return the live value for ``key`` or None."""
        entry = self.get_entry(key)
        return None if entry is None else entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry[V]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._live(entry, self._clock()):
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def put(self, key: str, value: V, ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` overrides the cache default for this entry."""
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d %s entries under %r", len(doomed), self.name, prefix)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def snapshot(self) -> Dict[str, V]:
        """Copy of the live (unexpired) entries."""
        with self._lock:
            now = self._clock()
            return {key: e.value for key, e in self._entries.items() if self._live(e, now)}

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            live = sum(1 for e in self._entries.values() if self._live(e, now))
            return CacheStats(entries=live, hits=self._hits, misses=self._misses)

    def _live(self, entry: CacheEntry[V], now: float) -> bool:
        if entry.expired(now):
            return False
        return self._is_valid is None or self._is_valid(entry.value)

    def __len__(self) -> int:
        return self.stats().entries
