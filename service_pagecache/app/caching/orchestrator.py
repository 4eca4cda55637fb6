"""
Page cache orchestrator.

Decides hit or miss for each request, writes skeletons through to the store
and reassembles dynamic fragments on every serve. Store trouble always
degrades to computing the page fresh; only malformed requests and handler
failures reach the caller.
"""

import asyncio
import time
from contextlib import asynccontextmanager, nullcontext
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, TYPE_CHECKING

from shared.errors import CorruptSkeleton, StoreUnavailable
from shared.logging import get_logger, set_cache_key
from .fragments import FragmentSplitter
from .keys import KeyDeriver
from .models import (
    CacheEntry,
    CacheKey,
    CacheOutcome,
    CacheResult,
    CacheState,
    FOREVER,
    FragmentRenderer,
    Handler,
    RenderedPage,
    RequestDescriptor,
    TTL,
    ttl_seconds,
)
from .stores import build_store
from .stores.base import PageStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import PageCacheSettings
    from shared.metrics import MetricsCollector


DEFAULT_TTL_SECONDS = 3600


class PageCache:
    """Full-page cache in front of an arbitrary request handler."""

    def __init__(
        self,
        store: PageStore,
        *,
        key_deriver: Optional[KeyDeriver] = None,
        splitter: Optional[FragmentSplitter] = None,
        default_ttl: TTL = DEFAULT_TTL_SECONDS,
        metrics: Optional["MetricsCollector"] = None,
        coalesce_misses: bool = False,
        clock=time.time,
    ):
        ttl_seconds(default_ttl)  # rejects non-positive TTLs up front
        self.store = store
        self.key_deriver = key_deriver or KeyDeriver()
        self.splitter = splitter or FragmentSplitter()
        self.default_ttl = default_ttl
        self.metrics = metrics
        self.coalesce_misses = coalesce_misses
        self._clock = clock
        self.logger = get_logger("pagecache.orchestrator")

        self._pending_writes: Set["asyncio.Task[None]"] = set()
        self._key_locks: Dict[CacheKey, List[Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: "PageCacheSettings",
        store: Optional[PageStore] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ) -> "PageCache":
        """Build a cache, and its store unless one is given, from settings."""
        return cls(
            store if store is not None else build_store(settings),
            key_deriver=KeyDeriver(settings.ignored_query_params, settings.vary_headers),
            splitter=FragmentSplitter(settings.marker_start, settings.marker_end),
            default_ttl=settings.default_ttl_seconds or FOREVER,
            metrics=metrics,
            coalesce_misses=settings.coalesce_misses,
        )

    async def serve(
        self,
        descriptor: RequestDescriptor,
        handler: Handler,
        renderer: FragmentRenderer,
        *,
        variation: Optional[Mapping[str, str]] = None,
        tags: Iterable[str] = (),
        ttl: Optional[TTL] = None,
    ) -> CacheResult:
        """Serve one request through the cache.

        Raises:
            MalformedDescriptor: the request cannot be keyed.
            Exception: whatever ``handler`` or ``renderer`` raised, unchanged.
        """
        if isinstance(tags, str):
            tags = (tags,)
        states = [CacheState.START]
        key = self.key_deriver.derive(descriptor, variation)
        path = self.key_deriver.canonical_path(descriptor)
        states.append(CacheState.KEY_DERIVED)
        set_cache_key(key)

        states.append(CacheState.LOOKUP)
        entry = await self._lookup(key)
        if entry is not None:
            return await self._serve_hit(key, entry, handler, renderer, states)

        if not self.coalesce_misses:
            states.append(CacheState.MISS)
            return await self._serve_miss(key, path, handler, renderer, tags, ttl, states)

        async with self._key_lock(key):
            # Another request may have filled the entry while we waited
            entry = await self._lookup(key)
            if entry is not None:
                return await self._serve_hit(key, entry, handler, renderer, states)
            states.append(CacheState.MISS)
            return await self._serve_miss(key, path, handler, renderer, tags, ttl, states)

    async def drain(self) -> None:
        """Wait for store writes that are still in flight."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    async def _lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        try:
            return await self.store.get(key)
        except StoreUnavailable as exc:
            self.logger.warning("Cache lookup failed; forcing miss", cache_key=key, error=str(exc))
            self._count("page_cache_store_errors_total", operation="get")
            return None

    async def _serve_hit(
        self,
        key: CacheKey,
        entry: CacheEntry,
        handler: Handler,
        renderer: FragmentRenderer,
        states: List[CacheState],
    ) -> CacheResult:
        states.extend([CacheState.HIT, CacheState.REASSEMBLING])
        try:
            body = await self.splitter.reassemble(entry.skeleton, entry.fragments, renderer)
        except CorruptSkeleton as exc:
            self.logger.error(
                "Corrupt cached skeleton; bypassing cache",
                cache_key=key,
                error=exc.message,
                details=exc.details,
            )
            return await self._bypass(key, handler, renderer, states)

        self._count("page_cache_fragments_rendered_total", amount=len(entry.fragments))
        states.append(CacheState.DONE)
        self._count("page_cache_requests_total", outcome=CacheOutcome.HIT.value)
        self.logger.debug("Page cache hit", cache_key=key)
        return CacheResult(key, CacheOutcome.HIT, body, dict(entry.headers), states)

    async def _serve_miss(
        self,
        key: CacheKey,
        path: str,
        handler: Handler,
        renderer: FragmentRenderer,
        tags: Iterable[str],
        ttl: Optional[TTL],
        states: List[CacheState],
    ) -> CacheResult:
        page = await self._run_handler(handler)

        try:
            skeleton, fragments = self.splitter.split(page.body)
        except CorruptSkeleton as exc:
            self.logger.warning("Response cannot be split; serving uncached", cache_key=key, error=exc.message)
            states.append(CacheState.BYPASS)
            self._count("page_cache_requests_total", outcome=CacheOutcome.BYPASS.value)
            return CacheResult(key, CacheOutcome.BYPASS, page.body, dict(page.headers), states)

        now = self._clock()
        lifetime = ttl_seconds(self.default_ttl if ttl is None else ttl)
        entry = CacheEntry(
            key=key,
            skeleton=skeleton,
            fragments=fragments,
            tags=frozenset(tags),
            expires_at=None if lifetime is None else now + lifetime,
            created_at=now,
            path=path,
            headers=tuple((str(name), str(value)) for name, value in page.headers.items()),
        )
        await self._write(entry)

        states.append(CacheState.REASSEMBLING)
        body = await self.splitter.reassemble(skeleton, fragments, renderer)
        self._count("page_cache_fragments_rendered_total", amount=len(fragments))
        states.append(CacheState.DONE)
        self._count("page_cache_requests_total", outcome=CacheOutcome.MISS.value)
        self.logger.debug("Page cache miss stored", cache_key=key, fragments=len(fragments), ttl=lifetime)
        return CacheResult(key, CacheOutcome.MISS, body, dict(page.headers), states)

    async def _bypass(
        self,
        key: CacheKey,
        handler: Handler,
        renderer: FragmentRenderer,
        states: List[CacheState],
    ) -> CacheResult:
        """Compute the page fresh without reading or writing the store."""
        states.append(CacheState.BYPASS)
        self._count("page_cache_requests_total", outcome=CacheOutcome.BYPASS.value)
        page = await self._run_handler(handler)
        try:
            skeleton, fragments = self.splitter.split(page.body)
        except CorruptSkeleton:
            return CacheResult(key, CacheOutcome.BYPASS, page.body, dict(page.headers), states)

        body = await self.splitter.reassemble(skeleton, fragments, renderer)
        self._count("page_cache_fragments_rendered_total", amount=len(fragments))
        return CacheResult(key, CacheOutcome.BYPASS, body, dict(page.headers), states)

    async def _run_handler(self, handler: Handler) -> RenderedPage:
        with self._timed("page_cache_handler_duration_seconds"):
            result = await handler()

        if isinstance(result, RenderedPage):
            return result
        if isinstance(result, (bytes, bytearray, memoryview)):
            return RenderedPage(body=bytes(result))
        if isinstance(result, str):
            return RenderedPage(body=result.encode("utf-8"))
        raise TypeError(f"Page handler returned {type(result).__name__}, expected bytes or RenderedPage")

    async def _write(self, entry: CacheEntry) -> None:
        """Store an entry; the write outlives cancellation of the requesting task."""
        task = asyncio.ensure_future(self._put(entry))
        self._pending_writes.add(task)
        self._set_gauge("page_cache_pending_writes", len(self._pending_writes))
        task.add_done_callback(self._write_finished)
        await asyncio.shield(task)

    def _write_finished(self, task: "asyncio.Task[None]") -> None:
        self._pending_writes.discard(task)
        self._set_gauge("page_cache_pending_writes", len(self._pending_writes))

    async def _put(self, entry: CacheEntry) -> None:
        try:
            await self.store.put(entry)
        except StoreUnavailable as exc:
            self.logger.warning("Cache write failed; response served uncached", cache_key=entry.key, error=str(exc))
            self._count("page_cache_store_errors_total", operation="put")

    @asynccontextmanager
    async def _key_lock(self, key: CacheKey):
        """Per-key lock for miss coalescing, dropped once nobody waits on it."""
        slot = self._key_locks.get(key)
        if slot is None:
            slot = self._key_locks[key] = [asyncio.Lock(), 0]
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if not slot[1]:
                self._key_locks.pop(key, None)

    def _count(self, metric_name: str, amount: float = 1, **labels) -> None:
        if self.metrics and amount:
            self.metrics.increment_counter(metric_name, amount=amount, **labels)

    def _timed(self, metric_name: str):
        if self.metrics:
            return self.metrics.time_operation(metric_name)
        return nullcontext()

    def _set_gauge(self, metric_name: str, value: float) -> None:
        if self.metrics:
            self.metrics.set_gauge(metric_name, value)
