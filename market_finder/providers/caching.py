"""
Stale-while-revalidate response cache for provider queries.

Entries are keyed by a geographic cell (center rounded to two decimals,
about 1 km, plus the radius) so every caller near the same point shares one
entry. A fresh entry is returned as-is. A stale entry is returned
immediately and refreshed in the background, at most one refresh per key at
a time. A miss blocks on the upstream fetch.

The clock and storage backend are injectable so tests can move time
without sleeping.
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from market_finder import metrics
from market_finder.models import CachedResponse
from .base import CacheWriteError

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Dict[str, Any]]]


def build_payload(lat: float, lng: float, radius_m: int, markets: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Wrap raw provider records with the echoed query and a fetch timestamp."""
    return {
        "center": {"lat": lat, "lng": lng},
        "radius": radius_m,
        "markets": markets,
        "fetched_at": datetime.now(timezone.utc).isoformat(),
    }


class CacheBackend(ABC):
    """Storage for `CachedResponse` entries."""

    name = "abstract"

    @abstractmethod
    async def read(self, key: str) -> Optional[CachedResponse]:
        pass

    @abstractmethod
    async def write(self, entry: CachedResponse) -> None:
        """Store an entry, replacing any previous one.

        Raises:
            CacheWriteError: If the storage rejects the write
        """
        pass


class MemoryCacheBackend(CacheBackend):
    """Process-local dict. Each write swaps the whole entry object."""

    name = "memory"

    def __init__(self):
        self._entries: Dict[str, CachedResponse] = {}

    async def read(self, key: str) -> Optional[CachedResponse]:
        return self._entries.get(key)

    async def write(self, entry: CachedResponse) -> None:
        self._entries[entry.cache_key] = entry

    def __len__(self):
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """redis.asyncio-backed storage, one JSON document per key.

    Args:
        client: A `redis.asyncio.Redis` instance
        prefix: Key prefix inside Redis
        retention_seconds: Optional Redis-level expiry; None keeps entries
            until Redis evicts them
    """

    name = "redis"

    def __init__(self, client, prefix: str = "market_cache", retention_seconds: Optional[int] = None):
        self.client = client
        self.prefix = prefix
        self.retention_seconds = retention_seconds

    def _redis_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def read(self, key: str) -> Optional[CachedResponse]:
        try:
            raw = await self.client.get(self._redis_key(key))
        except RedisError as e:
            logger.warning("[cache] redis read failed for %s: %s", key, e)
            return None
        if not raw:
            return None
        try:
            return CachedResponse.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("[cache] corrupt entry for %s, treating as miss: %s", key, e)
            return None

    async def write(self, entry: CachedResponse) -> None:
        try:
            await self.client.set(
                self._redis_key(entry.cache_key),
                json.dumps(entry.to_dict()),
                ex=self.retention_seconds,
            )
        except RedisError as e:
            raise CacheWriteError(f"redis write failed for {entry.cache_key}: {e}") from e


@dataclass
class CacheLookup:
    payload: Dict[str, Any]
    is_fresh: bool
    age_seconds: float


class ResponseCache:
    """Stale-while-revalidate cache over a `CacheBackend`.

    Args:
        backend: Storage backend (defaults to a fresh MemoryCacheBackend)
        ttl_seconds: Freshness window
        namespace: Key prefix separating providers ("osm", "google", ...)
        clock: Returns the current time in seconds
        precision: Decimal places kept when rounding the center
        refresh_timeout: Upper bound on one background refresh, in seconds
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_seconds: float = 43200,
        namespace: str = "osm",
        clock: Callable[[], float] = time.time,
        precision: int = 2,
        refresh_timeout: float = 15.0,
    ):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self.clock = clock
        self.precision = precision
        self.refresh_timeout = refresh_timeout
        self._refreshing: Dict[str, asyncio.Task] = {}
        self._fetching: Dict[str, asyncio.Task] = {}

    def make_key(self, lat: float, lng: float, radius_m: int) -> str:
        p = self.precision
        return f"{self.namespace}:{lat:.{p}f}:{lng:.{p}f}:{int(radius_m)}"

    async def get(self, key: str) -> Optional[CacheLookup]:
        entry = await self.backend.read(key)
        if entry is None:
            return None
        age = self.clock() - entry.stored_at
        return CacheLookup(payload=entry.payload, is_fresh=age < self.ttl_seconds, age_seconds=age)

    async def put(self, key: str, payload: Dict[str, Any]) -> bool:
        """Store a payload. A rejected write is logged and reported as False."""
        entry = CachedResponse(cache_key=key, payload=payload, stored_at=self.clock())
        try:
            await self.backend.write(entry)
            return True
        except CacheWriteError as e:
            logger.error("[cache] write failed for %s: %s", key, e)
            await metrics.increment("cache_write_failure")
            return False

    def is_refreshing(self, key: str) -> bool:
        task = self._refreshing.get(key)
        return task is not None and not task.done()

    def refresh_in_background(self, key: str, fetch_fn: FetchFn) -> asyncio.Task:
        """Start a refresh for `key` unless one is already running; return its task."""
        task = self._refreshing.get(key)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._refresh(key, fetch_fn))
        self._refreshing[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(self._refreshing, k, t))
        return task

    @staticmethod
    def _forget(registry: Dict[str, asyncio.Task], key: str, task: asyncio.Task) -> None:
        if registry.get(key) is task:
            del registry[key]
        # callers may have stopped waiting; mark the outcome as retrieved
        if not task.cancelled():
            task.exception()

    async def _refresh(self, key: str, fetch_fn: FetchFn) -> bool:
        await metrics.increment("cache_refresh")
        try:
            payload = await asyncio.wait_for(fetch_fn(), timeout=self.refresh_timeout)
        except asyncio.TimeoutError:
            logger.warning("[cache] background refresh for %s timed out after %ss", key, self.refresh_timeout)
            await metrics.increment("cache_refresh_failure")
            return False
        except Exception:
            # nothing awaits this task; the stale entry stays in place
            logger.exception("[cache] background refresh for %s failed", key)
            await metrics.increment("cache_refresh_failure")
            return False
        stored = await self.put(key, payload)
        if stored:
            logger.info("[cache] background refresh complete for %s", key)
        return stored

    async def _fetch_and_store(self, key: str, fetch_fn: FetchFn) -> Dict[str, Any]:
        payload = await fetch_fn()
        await self.put(key, payload)
        return payload

    async def get_or_fetch(self, lat: float, lng: float, radius_m: int, fetch_fn: FetchFn) -> Dict[str, Any]:
        """Serve a payload for the cell around (lat, lng, radius_m).

        Fresh hit: returned without any upstream call. Stale hit: returned
        immediately and one background refresh is scheduled. Miss: waits for
        `fetch_fn`, stores the result, returns it. Concurrent misses for one
        key share a single upstream call.

        Raises:
            Whatever `fetch_fn` raises on a miss; failures are not cached.
        """
        key = self.make_key(lat, lng, radius_m)
        lookup = await self.get(key)
        if lookup is not None:
            if lookup.is_fresh:
                logger.debug("[cache] hit %s age=%.0fs", key, lookup.age_seconds)
                await metrics.increment(f"cache_hit:{self.namespace}")
                return lookup.payload
            logger.info("[cache] stale %s age=%.0fs, refreshing in background", key, lookup.age_seconds)
            await metrics.increment(f"cache_stale:{self.namespace}")
            self.refresh_in_background(key, fetch_fn)
            return lookup.payload

        await metrics.increment(f"cache_miss:{self.namespace}")
        task = self._fetching.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._fetch_and_store(key, fetch_fn))
            self._fetching[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(self._fetching, k, t))
        return await asyncio.shield(task)

    async def aclose(self) -> None:
        """Cancel outstanding background work."""
        tasks = [t for t in list(self._refreshing.values()) + list(self._fetching.values()) if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
