"""
Redis-backed page store.

Layout under ``<namespace>:``:

- ``entry:<key>``: JSON-serialized CacheEntry, expiring with the entry TTL
- ``tag:<tag>``: keys written with the tag
- ``prefix:<path>``: keys whose path is at or below ``<path>``
- ``keys``: every key written, used by stats

Indexes are sorted sets scored by the entry's expiry time. Entries cached
forever go to separate ``pinned-tag:``, ``pinned-prefix:`` and ``pinned-keys``
sets so the volatile ones can carry a key TTL that follows their longest
lived member. Every write prunes expired members from the indexes it touches.

Invalidation WATCHes the entries it read and deletes them together with
their index memberships in one MULTI/EXEC, retrying when a concurrent write
changes one of them.
"""

import asyncio
import base64
import json
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreUnavailable
from shared.logging import get_logger
from ..models import CacheEntry, CacheKey, Fragment
from .base import PageStore, normalize_prefix, path_prefixes


SERIALIZATION_VERSION = 1
_BACKEND_ERRORS = (RedisError, OSError, asyncio.TimeoutError)
WATCH_RETRIES = 5


def encode_entry(entry: CacheEntry) -> str:
    """Serialize an entry for storage."""
    return json.dumps({
        "v": SERIALIZATION_VERSION,
        "key": entry.key,
        "skeleton": base64.b64encode(entry.skeleton).decode("ascii"),
        "fragments": [
            {
                "id": fragment.placeholder_id,
                "markup": base64.b64encode(fragment.raw_markup).decode("ascii"),
                "position": fragment.position,
            }
            for fragment in entry.fragments
        ],
        "tags": sorted(entry.tags),
        "expires_at": entry.expires_at,
        "created_at": entry.created_at,
        "path": entry.path,
        "headers": [list(header) for header in entry.headers],
    }, separators=(",", ":"))


def decode_entry(payload: Any) -> CacheEntry:
    """Rebuild an entry from :func:`encode_entry` output.

    Raises ValueError for payloads that are not a supported entry.
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    try:
        data = json.loads(payload)
        if data.get("v") != SERIALIZATION_VERSION:
            raise ValueError(f"Unsupported entry version {data.get('v')!r}")
        return CacheEntry(
            key=data["key"],
            skeleton=base64.b64decode(data["skeleton"]),
            fragments=tuple(
                Fragment(
                    placeholder_id=item["id"],
                    raw_markup=base64.b64decode(item["markup"]),
                    position=int(item["position"]),
                )
                for item in data["fragments"]
            ),
            tags=frozenset(data["tags"]),
            expires_at=data["expires_at"],
            created_at=data["created_at"],
            path=data["path"],
            headers=tuple((str(name), str(value)) for name, value in data["headers"]),
        )
    except (KeyError, TypeError, AttributeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Malformed cache entry payload: {exc}") from exc


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def _score(entry: CacheEntry) -> float:
    return math.inf if entry.expires_at is None else entry.expires_at


class RedisPageStore(PageStore):
    """Page store on Redis, guarded by a circuit breaker."""

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "pagecache",
        client: Optional[redis.Redis] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self._redis = client
        self._clock = clock
        self.logger = get_logger("pagecache.store.redis")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exceptions=_BACKEND_ERRORS,
            name="redis_store",
        )

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return self._redis

    def _entry_key(self, key: CacheKey) -> str:
        return f"{self.namespace}:entry:{key}"

    def _index_key(self, kind: str, name: Optional[str] = None, pinned: bool = False) -> str:
        family = f"pinned-{kind}" if pinned else kind
        if name is None:
            return f"{self.namespace}:{family}"
        return f"{self.namespace}:{family}:{name}"

    def _index_pair(self, kind: str, name: Optional[str] = None) -> List[str]:
        return [self._index_key(kind, name), self._index_key(kind, name, pinned=True)]

    def _indexes(self, entry: CacheEntry) -> List[str]:
        """Every index an entry is a member of."""
        pinned = entry.expires_at is None
        names = [self._index_key("tag", tag, pinned) for tag in sorted(entry.tags)]
        names.extend(self._index_key("prefix", prefix, pinned) for prefix in path_prefixes(entry.path))
        names.append(self._index_key("keys", pinned=pinned))
        return names

    async def _call(self, operation: str, func: Callable[..., Any], *args) -> Any:
        """Run a backend operation, mapping every backend failure to StoreUnavailable."""
        try:
            return await self.circuit_breaker.call(func, *args)
        except CircuitBreakerOpenException as exc:
            raise StoreUnavailable(operation, str(exc), {"circuit": "open"}) from exc
        except _BACKEND_ERRORS as exc:
            self.logger.error("Redis store operation failed", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, str(exc)) from exc

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        return await self._call("get", self._get, key)

    async def _get(self, key: CacheKey) -> Optional[CacheEntry]:
        client = await self._get_redis()
        entry = await self._read_entry(client, key)
        # Redis drops the entry on its own once the PX runs out
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    async def _read_entry(self, client: redis.Redis, key: CacheKey) -> Optional[CacheEntry]:
        payload = await client.get(self._entry_key(key))
        if payload is None:
            return None
        try:
            return decode_entry(payload)
        except ValueError as exc:
            self.logger.warning("Discarding undecodable cache entry", cache_key=key, error=str(exc))
            return None

    async def put(self, entry: CacheEntry) -> None:
        await self._call("put", self._put, entry)

    async def _put(self, entry: CacheEntry) -> None:
        client = await self._get_redis()
        previous = await self._read_entry(client, entry.key)
        now = self._clock()
        px = expire_at_ms = None
        if entry.expires_at is not None:
            px = max(1, math.ceil((entry.expires_at - now) * 1000))
            expire_at_ms = math.ceil(entry.expires_at * 1000)

        indexes = self._indexes(entry)
        dropped = [] if previous is None else [name for name in self._indexes(previous) if name not in indexes]

        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._entry_key(entry.key), encode_entry(entry), px=px)
            for index_key in dropped:
                pipe.zrem(index_key, entry.key)
            for index_key in indexes:
                pipe.zadd(index_key, {entry.key: _score(entry)})
                if expire_at_ms is not None:
                    pipe.zremrangebyscore(index_key, "-inf", now)
                    # NX gives a new index its TTL, GT extends it for longer lived members
                    pipe.pexpireat(index_key, expire_at_ms, nx=True)
                    pipe.pexpireat(index_key, expire_at_ms, gt=True)
            await pipe.execute()

        self.logger.debug("Cached page entry", cache_key=entry.key, ttl_ms=px, tags=sorted(entry.tags))

    async def invalidate(self, key: CacheKey) -> int:
        return await self._call("invalidate", self._invalidate_watched, "invalidate",
                                self._index_pair("keys"), lambda entry: True, [key])

    async def invalidate_by_tag(self, tag: str) -> int:
        return await self._call("invalidate_by_tag", self._invalidate_watched, "invalidate_by_tag",
                                self._index_pair("tag", tag), lambda entry: tag in entry.tags)

    async def invalidate_by_prefix(self, prefix: str) -> int:
        prefix = normalize_prefix(prefix)
        return await self._call("invalidate_by_prefix", self._invalidate_watched, "invalidate_by_prefix",
                                self._index_pair("prefix", prefix),
                                lambda entry: prefix in path_prefixes(entry.path))

    async def _invalidate_watched(
        self,
        operation: str,
        index_keys: List[str],
        matches: Callable[[CacheEntry], bool],
        keys: Optional[List[CacheKey]] = None,
    ) -> int:
        client = await self._get_redis()
        for attempt in range(1, WATCH_RETRIES + 1):
            candidates = keys
            if candidates is None:
                members = set()
                for index_key in index_keys:
                    members.update(_text(member) for member in await client.zrange(index_key, 0, -1))
                candidates = sorted(members)
            try:
                return await self._remove_matching(client, index_keys, candidates, matches)
            except WatchError:
                self.logger.debug("Entries changed during invalidation, retrying",
                                  operation=operation, attempt=attempt)
        raise StoreUnavailable(operation, f"Entries kept changing after {WATCH_RETRIES} attempts")

    async def _remove_matching(
        self,
        client: redis.Redis,
        index_keys: List[str],
        candidates: Sequence[CacheKey],
        matches: Callable[[CacheEntry], bool],
    ) -> int:
        """Delete matching candidates and their memberships in one transaction.

        Raises WatchError when one of the candidate entries is written or
        deleted between the read and the commit.
        """
        now = self._clock()
        entry_keys = [self._entry_key(key) for key in candidates]
        async with client.pipeline(transaction=True) as pipe:
            payloads: List[Any] = []
            if entry_keys:
                await pipe.watch(*entry_keys)
                payloads = await pipe.mget(entry_keys)

            doomed: List[Tuple[CacheKey, List[str]]] = []
            stale: List[CacheKey] = []
            for key, payload in zip(candidates, payloads):
                if payload is None:
                    stale.append(key)
                    continue
                try:
                    entry = decode_entry(payload)
                except ValueError:
                    doomed.append((key, index_keys))
                    continue
                if entry.is_expired(now) or not matches(entry):
                    stale.append(key)
                else:
                    doomed.append((key, self._indexes(entry)))

            pipe.multi()
            for key, _ in doomed:
                pipe.delete(self._entry_key(key))
            for key, memberships in doomed:
                for index_key in memberships:
                    pipe.zrem(index_key, key)
            for index_key in index_keys:
                if stale:
                    pipe.zrem(index_key, *stale)
                pipe.zremrangebyscore(index_key, "-inf", now)
            results = await pipe.execute()

        # DEL replies come first; an entry may expire between read and delete
        return sum(1 for reply in results[:len(doomed)] if reply)

    async def invalidate_all(self) -> int:
        return await self._call("invalidate_all", self._invalidate_all)

    async def _invalidate_all(self) -> int:
        client = await self._get_redis()
        removed = 0
        batch: List[str] = []
        entry_prefix = f"{self.namespace}:entry:"
        async for name in client.scan_iter(match=f"{self.namespace}:*", count=500):
            name = _text(name)
            if name.startswith(entry_prefix):
                removed += 1
            batch.append(name)
            if len(batch) >= 500:
                await client.delete(*batch)
                batch = []
        if batch:
            await client.delete(*batch)

        self.logger.info("Cleared page cache namespace", namespace=self.namespace, entries=removed)
        return removed

    async def stats(self) -> Dict[str, Any]:
        tracked = await self._call("stats", self._count_live)
        return {
            "backend": "redis",
            "namespace": self.namespace,
            "tracked_keys": tracked,
            "circuit_breaker": self.circuit_breaker.get_state(),
        }

    async def _count_live(self) -> int:
        client = await self._get_redis()
        volatile, pinned = self._index_pair("keys")
        live = await client.zcount(volatile, f"({self._clock()}", "+inf")
        return int(live or 0) + int(await client.zcard(pinned) or 0)

    async def health_check(self) -> bool:
        try:
            client = await self._get_redis()
            await self._call("ping", client.ping)
            return True
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store closed")
