"""
Data models shared by the page cache components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, List, Mapping, Optional, Tuple, Union


CacheKey = str


class _Forever:
    """TTL sentinel for entries that never expire."""

    _instance: Optional["_Forever"] = None

    def __new__(cls) -> "_Forever":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "FOREVER"

    def __reduce__(self):
        return (_Forever, ())


FOREVER = _Forever()

TTL = Union[int, float, timedelta, _Forever]


def ttl_seconds(ttl: TTL) -> Optional[float]:
    """Normalize a TTL to seconds; ``None`` means the entry never expires."""
    if ttl is FOREVER:
        return None
    if isinstance(ttl, timedelta):
        seconds = ttl.total_seconds()
    else:
        seconds = float(ttl)
    if seconds <= 0:
        raise ValueError(f"TTL must be positive or FOREVER, got {ttl!r}")
    return seconds


class CacheOutcome(str, Enum):
    """How a request was finally served."""
    HIT = "hit"
    MISS = "miss"
    BYPASS = "bypass"


class CacheState(str, Enum):
    """Per-request orchestrator states."""
    START = "start"
    KEY_DERIVED = "key_derived"
    LOOKUP = "lookup"
    HIT = "hit"
    MISS = "miss"
    REASSEMBLING = "reassembling"
    DONE = "done"
    BYPASS = "bypass"


@dataclass(frozen=True)
class RequestDescriptor:
    """Inbound request as seen by the cache.

    ``url`` may be absolute (``https://example.com/a?b=1``) or origin-relative
    (``/a?b=1``). ``headers`` is only consulted for variation attributes.
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Fragment:
    """Dynamic region excised from a response body."""

    placeholder_id: str
    raw_markup: bytes
    position: int


@dataclass(frozen=True)
class CacheEntry:
    """Cached skeleton plus everything needed to serve it again."""

    key: CacheKey
    skeleton: bytes
    fragments: Tuple[Fragment, ...] = ()
    tags: FrozenSet[str] = frozenset()
    expires_at: Optional[float] = None
    created_at: float = 0.0
    path: str = "/"
    headers: Tuple[Tuple[str, str], ...] = ()

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True)
class RenderedPage:
    """Output of the wrapped handler."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class CacheResult:
    """Response produced by the orchestrator for one request."""

    key: CacheKey
    outcome: CacheOutcome
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    states: List[CacheState] = field(default_factory=list)


Handler = Callable[[], Awaitable[Union[bytes, RenderedPage]]]
FragmentRenderer = Callable[[bytes], Union[bytes, Awaitable[bytes]]]
