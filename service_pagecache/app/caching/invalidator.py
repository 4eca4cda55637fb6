"""
Administrative invalidation over a page store.
"""

from typing import Mapping, Optional, TYPE_CHECKING

from shared.logging import get_logger
from .keys import KeyDeriver
from .models import CacheKey, RequestDescriptor
from .stores.base import PageStore, normalize_prefix

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class CacheInvalidator:
    """Removes cache entries by key, URL, tag, path prefix or wholesale.

    Each call returns only after the store has finished, with the number of
    entries removed. Store failures propagate as ``StoreUnavailable`` so the
    caller knows the invalidation did not take effect.
    """

    def __init__(
        self,
        store: PageStore,
        key_deriver: Optional[KeyDeriver] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.key_deriver = key_deriver or KeyDeriver()
        self.metrics = metrics
        self.logger = get_logger("pagecache.invalidator")

    async def invalidate(self, key: CacheKey) -> int:
        """Invalidate a single entry by its cache key."""
        removed = await self.store.invalidate(key)
        self._record("key", removed, cache_key=key)
        return removed

    async def invalidate_url(
        self,
        descriptor: RequestDescriptor,
        variation: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Invalidate the entry a request would be served from."""
        key = self.key_deriver.derive(descriptor, variation)
        removed = await self.store.invalidate(key)
        self._record("url", removed, cache_key=key, url=descriptor.url)
        return removed

    async def invalidate_by_tag(self, tag: str) -> int:
        """Invalidate every entry written with ``tag``."""
        removed = await self.store.invalidate_by_tag(tag)
        self._record("tag", removed, tag=tag)
        return removed

    async def invalidate_by_prefix(self, prefix: str) -> int:
        """Invalidate every entry whose path is at or below ``prefix``."""
        prefix = normalize_prefix(prefix)
        removed = await self.store.invalidate_by_prefix(prefix)
        self._record("prefix", removed, prefix=prefix)
        return removed

    async def invalidate_all(self) -> int:
        """Flush every tracked entry (deploy-time full flush)."""
        removed = await self.store.invalidate_all()
        self._record("all", removed)
        return removed

    def _record(self, kind: str, removed: int, **context) -> None:
        self.logger.info("Invalidated page cache entries", kind=kind, removed=removed, **context)
        if self.metrics:
            self.metrics.increment_counter("page_cache_invalidations_total", kind=kind)
            if removed:
                self.metrics.increment_counter("page_cache_invalidated_entries_total", amount=removed, kind=kind)
