"""
Store adapter interface.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from ..keys import normalize_path
from ..models import CacheEntry, CacheKey


def path_prefixes(path: str) -> List[str]:
    """Segment-aligned prefixes of a canonical path, root first.

    ``/articles/42`` -> ``["/", "/articles", "/articles/42"]``
    """
    segments = [segment for segment in path.split("/") if segment]
    prefixes = ["/"]
    current = ""
    for segment in segments:
        current = f"{current}/{segment}"
        prefixes.append(current)
    return prefixes


def normalize_prefix(prefix: str) -> str:
    """Normalize an invalidation prefix to the form produced by :func:`path_prefixes`."""
    prefix = normalize_path(prefix)
    if not prefix.startswith("/"):
        prefix = f"/{prefix}"
    stripped = prefix.rstrip("/")
    return stripped or "/"


class PageStore(ABC):
    """Key/value backend for cache entries.

    Implementations synchronize internally; callers never hold a lock around
    store calls. Every failure to reach the backend surfaces as
    ``StoreUnavailable``.
    """

    @abstractmethod
    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or ``None``."""

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Write ``entry``, replacing any previous entry for its key."""

    @abstractmethod
    async def invalidate(self, key: CacheKey) -> int:
        """Remove one entry; absent keys are not an error."""

    @abstractmethod
    async def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry written with ``tag``."""

    @abstractmethod
    async def invalidate_by_prefix(self, prefix: str) -> int:
        """Remove every entry whose path is at or below ``prefix``."""

    @abstractmethod
    async def invalidate_all(self) -> int:
        """Remove every tracked entry."""

    async def stats(self) -> Dict[str, Any]:
        return {}

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
