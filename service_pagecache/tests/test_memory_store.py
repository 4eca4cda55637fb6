"""
Unit tests for the in-process page store.
"""

import pytest

from service_pagecache.app.caching.models import CacheEntry, Fragment
from service_pagecache.app.caching.stores.base import normalize_prefix, path_prefixes
from service_pagecache.app.caching.stores.memory import MemoryPageStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_entry(key, path="/", tags=(), expires_at=None, skeleton=b"<p>page</p>"):
    return CacheEntry(
        key=key,
        skeleton=skeleton,
        fragments=(Fragment("0", b"{{user}}", 3),),
        tags=frozenset(tags),
        expires_at=expires_at,
        path=path,
    )


class TestPathHelpers:
    """Test cases for prefix helpers."""

    def test_path_prefixes(self):
        assert path_prefixes("/articles/42") == ["/", "/articles", "/articles/42"]
        assert path_prefixes("/") == ["/"]
        assert path_prefixes("/a/b/") == ["/", "/a", "/a/b"]

    @pytest.mark.parametrize("raw,expected", [
        ("/articles/", "/articles"),
        ("articles", "/articles"),
        ("/", "/"),
        ("", "/"),
        ("/caf%C3%A9", "/caf%C3%A9"),
        ("/café", "/caf%C3%A9"),
        ("/files/a%2fb/", "/files/a%2Fb"),
        ("/blob/%ff", "/blob/%FF"),
        ("/%7Euser", "/~user"),
    ])
    def test_normalize_prefix(self, raw, expected):
        assert normalize_prefix(raw) == expected


class TestMemoryPageStore:
    """Test cases for MemoryPageStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        """Create MemoryPageStore instance."""
        return MemoryPageStore(clock=clock)

    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        """Stored entries are returned unchanged."""
        entry = make_entry("k1", path="/articles/1")

        await store.put(entry)

        assert await store.get("k1") == entry

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Unknown keys are absent."""
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_put_replaces_entry(self, store):
        """A second write for a key replaces the first and its index entries."""
        await store.put(make_entry("k1", tags={"old"}))
        await store.put(make_entry("k1", tags={"new"}, skeleton=b"v2"))

        assert (await store.get("k1")).skeleton == b"v2"
        assert await store.invalidate_by_tag("old") == 0
        assert await store.get("k1") is not None

    @pytest.mark.asyncio
    async def test_invalidate(self, store):
        """Invalidated keys are absent afterwards."""
        await store.put(make_entry("k1"))

        assert await store.invalidate("k1") == 1
        assert await store.get("k1") is None

    @pytest.mark.asyncio
    async def test_invalidate_missing_key(self, store):
        """Invalidating an absent key is a no-op."""
        assert await store.invalidate("ghost") == 0

    @pytest.mark.asyncio
    async def test_invalidate_by_tag(self, store):
        """Tagged entries go, untagged entries stay."""
        await store.put(make_entry("a", tags={"product:7", "home"}))
        await store.put(make_entry("b", tags={"product:7"}))
        await store.put(make_entry("c", tags={"home"}))
        await store.put(make_entry("d"))

        assert await store.invalidate_by_tag("product:7") == 2

        assert await store.get("a") is None
        assert await store.get("b") is None
        assert await store.get("c") is not None
        assert await store.get("d") is not None

    @pytest.mark.asyncio
    async def test_invalidate_by_tag_cleans_other_tags(self, store):
        """Removed entries leave no dangling index membership."""
        await store.put(make_entry("a", tags={"x", "y"}))
        await store.invalidate_by_tag("x")

        assert await store.invalidate_by_tag("y") == 0
        assert (await store.stats())["tags"] == 0

    @pytest.mark.asyncio
    async def test_invalidate_by_prefix_is_segment_aligned(self, store):
        """Prefixes match whole path segments."""
        await store.put(make_entry("root", path="/"))
        await store.put(make_entry("list", path="/articles"))
        await store.put(make_entry("one", path="/articles/42"))
        await store.put(make_entry("archive", path="/articles-archive"))

        assert await store.invalidate_by_prefix("/articles/") == 2

        assert await store.get("list") is None
        assert await store.get("one") is None
        assert await store.get("archive") is not None
        assert await store.get("root") is not None

    @pytest.mark.asyncio
    async def test_invalidate_by_root_prefix(self, store):
        """The root prefix covers every path."""
        await store.put(make_entry("a", path="/"))
        await store.put(make_entry("b", path="/x/y"))

        assert await store.invalidate_by_prefix("/") == 2

    @pytest.mark.asyncio
    async def test_invalidate_all(self, store):
        """Full flush removes everything."""
        await store.put(make_entry("a", tags={"t"}))
        await store.put(make_entry("b", path="/p"))

        assert await store.invalidate_all() == 2
        assert await store.get("a") is None
        assert await store.get("b") is None
        assert (await store.stats())["entries"] == 0

    @pytest.mark.asyncio
    async def test_expired_entry_absent(self, store, clock):
        """Entries past their expiry read as absent."""
        await store.put(make_entry("k", expires_at=clock.now + 60))

        clock.advance(59)
        assert await store.get("k") is not None

        clock.advance(1)
        assert await store.get("k") is None
        assert (await store.stats())["expirations"] == 1

    @pytest.mark.asyncio
    async def test_forever_entry_survives(self, store, clock):
        """Entries without expiry survive any amount of time."""
        entry = make_entry("k", expires_at=None)
        await store.put(entry)

        clock.advance(10 * 365 * 24 * 3600)

        assert await store.get("k") == entry

    @pytest.mark.asyncio
    async def test_eviction_drops_oldest(self, clock):
        """A bounded store evicts the oldest write first."""
        store = MemoryPageStore(max_entries=2, clock=clock)

        await store.put(make_entry("a", tags={"t"}))
        await store.put(make_entry("b"))
        await store.put(make_entry("c"))

        assert await store.get("a") is None
        assert await store.get("b") is not None
        assert await store.get("c") is not None
        stats = await store.stats()
        assert stats["evictions"] == 1
        assert stats["entries"] == 2
        assert stats["tags"] == 0

    @pytest.mark.asyncio
    async def test_stats(self, store):
        """Stats describe the backend."""
        await store.put(make_entry("a", tags={"t1", "t2"}))

        stats = await store.stats()

        assert stats["backend"] == "memory"
        assert stats["entries"] == 1
        assert stats["tags"] == 2

    @pytest.mark.asyncio
    async def test_health_check(self, store):
        assert await store.health_check() is True
