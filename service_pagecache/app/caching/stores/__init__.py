"""
Store adapters for the page cache.
"""

from shared.config import PageCacheSettings
from .base import PageStore
from .memory import MemoryPageStore
from .redis_store import RedisPageStore


def build_store(settings: PageCacheSettings) -> PageStore:
    """Create the store backend selected by settings."""
    if settings.store_backend == "redis":
        return RedisPageStore(
            settings.redis_url,
            namespace=settings.namespace,
            failure_threshold=settings.store_failure_threshold,
            recovery_timeout=settings.store_recovery_timeout,
        )
    return MemoryPageStore(max_entries=settings.memory_max_entries)


__all__ = ["PageStore", "MemoryPageStore", "RedisPageStore", "build_store"]
