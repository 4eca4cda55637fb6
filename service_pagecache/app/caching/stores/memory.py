"""
In-process page store.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Set

from shared.logging import get_logger
from ..models import CacheEntry, CacheKey
from .base import PageStore, normalize_prefix, path_prefixes


class MemoryPageStore(PageStore):
    """Dictionary-backed store with tag and path-prefix indexes.

    ``max_entries`` bounds memory; when exceeded the oldest write is evicted,
    which callers observe as an ordinary miss. ``clock`` returns wall-clock
    seconds and can be replaced to simulate time in tests.
    """

    def __init__(self, max_entries: int = 0, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self.logger = get_logger("pagecache.store.memory")

        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[CacheKey]] = {}
        self._prefix_index: Dict[str, Set[CacheKey]] = {}
        self._lock = asyncio.Lock()

        self._evictions = 0
        self._expirations = 0

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._remove(key)
                self._expirations += 1
                return None
            return entry

    async def put(self, entry: CacheEntry) -> None:
        async with self._lock:
            if entry.key in self._entries:
                self._remove(entry.key)

            self._entries[entry.key] = entry
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(entry.key)
            for prefix in path_prefixes(entry.path):
                self._prefix_index.setdefault(prefix, set()).add(entry.key)

            while self.max_entries and len(self._entries) > self.max_entries:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                self._evictions += 1
                self.logger.debug("Evicted cache entry", cache_key=oldest)

    async def invalidate(self, key: CacheKey) -> int:
        async with self._lock:
            return self._remove(key)

    async def invalidate_by_tag(self, tag: str) -> int:
        async with self._lock:
            keys = list(self._tag_index.get(tag, ()))
            return sum(self._remove(key) for key in keys)

    async def invalidate_by_prefix(self, prefix: str) -> int:
        async with self._lock:
            keys = list(self._prefix_index.get(normalize_prefix(prefix), ()))
            return sum(self._remove(key) for key in keys)

    async def invalidate_all(self) -> int:
        async with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._tag_index.clear()
            self._prefix_index.clear()
            return removed

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "backend": "memory",
                "entries": len(self._entries),
                "tags": len(self._tag_index),
                "max_entries": self.max_entries,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }

    def _remove(self, key: CacheKey) -> int:
        """Drop an entry and its index memberships. Caller holds the lock."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return 0

        for tag in entry.tags:
            self._discard(self._tag_index, tag, key)
        for prefix in path_prefixes(entry.path):
            self._discard(self._prefix_index, prefix, key)
        return 1

    @staticmethod
    def _discard(index: Dict[str, Set[CacheKey]], name: str, key: CacheKey) -> None:
        members = index.get(name)
        if members is None:
            return
        members.discard(key)
        if not members:
            del index[name]
