"""
Page cache core.

Nothing in this package depends on a web framework: callers describe the
request with a RequestDescriptor and hand over an async handler plus a
fragment renderer.
"""

from .fragments import FragmentSplitter
from .invalidator import CacheInvalidator
from .keys import KeyDeriver
from .models import (
    FOREVER,
    CacheEntry,
    CacheOutcome,
    CacheResult,
    CacheState,
    Fragment,
    RenderedPage,
    RequestDescriptor,
)
from .orchestrator import PageCache
from .stores import MemoryPageStore, PageStore, RedisPageStore, build_store

__all__ = [
    "FOREVER",
    "CacheEntry",
    "CacheInvalidator",
    "CacheOutcome",
    "CacheResult",
    "CacheState",
    "Fragment",
    "FragmentSplitter",
    "KeyDeriver",
    "MemoryPageStore",
    "PageCache",
    "PageStore",
    "RedisPageStore",
    "RenderedPage",
    "RequestDescriptor",
    "build_store",
]
