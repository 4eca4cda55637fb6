"""
Page cache management service.

Exposes invalidation and stats over HTTP so data-mutation hooks and deploy
tooling can reach the cache outside the request path.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel, Field, model_validator

from shared.base_service import BaseService
from shared.config import PageCacheSettings
from .caching.invalidator import CacheInvalidator
from .caching.models import FragmentRenderer, RequestDescriptor
from .caching.orchestrator import PageCache
from .caching.stores.base import PageStore
from .middleware import PageCacheMiddleware


class InvalidationRequest(BaseModel):
    """Exactly one invalidation target."""

    key: Optional[str] = None
    url: Optional[str] = None
    tag: Optional[str] = None
    prefix: Optional[str] = None
    method: str = "GET"
    variation: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "InvalidationRequest":
        targets = [name for name in ("key", "url", "tag", "prefix") if getattr(self, name)]
        if len(targets) != 1:
            raise ValueError("Provide exactly one of key, url, tag or prefix")
        return self

    @property
    def kind(self) -> str:
        return next(name for name in ("key", "url", "tag", "prefix") if getattr(self, name))


class PageCacheService(BaseService):
    """Page cache management service implementation."""

    def __init__(self, settings: Optional[PageCacheSettings] = None, store: Optional[PageStore] = None):
        super().__init__("pagecache", settings)
        self.page_cache = PageCache.from_settings(self.config, store, metrics=self.metrics)
        self.store = self.page_cache.store
        self.invalidator = CacheInvalidator(self.store, self.page_cache.key_deriver, metrics=self.metrics)

        self._setup_cache_routes()
        self.app.state.pagecache_service = self

    def install(
        self,
        target_app: FastAPI,
        renderer_factory: Callable[[Request], FragmentRenderer],
        **options: Any,
    ) -> None:
        """Put ``target_app`` behind this service's page cache."""
        options.setdefault("cacheable_methods", self.config.cacheable_methods)
        target_app.add_middleware(
            PageCacheMiddleware,
            page_cache=self.page_cache,
            renderer_factory=renderer_factory,
            **options,
        )

    async def _on_shutdown(self):
        await self.page_cache.drain()
        await self.store.close()

    async def _check_dependencies(self) -> Dict[str, str]:
        healthy = await self.store.health_check()
        return {"store": "ok" if healthy else "unavailable"}

    def _setup_cache_routes(self):
        """Set up cache management routes."""

        @self.app.get("/cache/stats")
        async def cache_stats():
            """Store statistics and in-flight writes."""
            stats = await self.store.stats()
            stats["pending_writes"] = self.page_cache.pending_writes
            stats["default_ttl_seconds"] = self.config.default_ttl_seconds or None
            return stats

        @self.app.delete("/cache/keys/{key}")
        async def invalidate_key(key: str):
            """Invalidate one entry by cache key."""
            removed = await self.invalidator.invalidate(key)
            return {"kind": "key", "target": key, "removed": removed}

        @self.app.post("/cache/invalidate")
        async def invalidate(payload: InvalidationRequest):
            """Invalidate by key, URL, tag or path prefix."""
            kind = payload.kind
            if kind == "key":
                removed = await self.invalidator.invalidate(payload.key)
            elif kind == "url":
                descriptor = RequestDescriptor(method=payload.method, url=payload.url)
                removed = await self.invalidator.invalidate_url(descriptor, payload.variation)
            elif kind == "tag":
                removed = await self.invalidator.invalidate_by_tag(payload.tag)
            else:
                removed = await self.invalidator.invalidate_by_prefix(payload.prefix)
            return {"kind": kind, "target": getattr(payload, kind), "removed": removed}

        @self.app.delete("/cache")
        async def flush():
            """Flush every tracked entry."""
            removed = await self.invalidator.invalidate_all()
            return {"kind": "all", "removed": removed}


def create_app(settings: Optional[PageCacheSettings] = None) -> FastAPI:
    """Create page cache service application."""
    service = PageCacheService(settings)
    return service.app


if __name__ == "__main__":
    service = PageCacheService()
    service.run()
