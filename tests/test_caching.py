import asyncio
import gc
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from market_finder import metrics
from market_finder.models import CachedResponse
from market_finder.providers.base import CacheWriteError, ProviderUnavailableError
from market_finder.providers.caching import (
    MemoryCacheBackend,
    RedisCacheBackend,
    ResponseCache,
    build_payload,
)

from helpers import FakeClock

TTL = 43200


class CountingFetch:
    """Fetch function that counts calls and can be held open."""

    def __init__(self, payloads=None, error=None, gate=None, delay=0.0):
        self.payloads = list(payloads or [{"markets": ["fresh"]}])
        self.error = error
        self.gate = gate
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payloads[min(self.calls, len(self.payloads)) - 1]


class FakeRedis:
    def __init__(self, fail_get=False, fail_set=False):
        self.store = {}
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.expiries = {}

    async def get(self, key):
        if self.fail_get:
            raise RedisConnectionError("down")
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self.fail_set:
            raise RedisConnectionError("down")
        self.store[key] = value
        self.expiries[key] = ex


class RejectingBackend(MemoryCacheBackend):
    async def write(self, entry):
        raise CacheWriteError("disk full")


def make_cache(clock, **kwargs):
    return ResponseCache(MemoryCacheBackend(), ttl_seconds=TTL, namespace="osm", clock=clock, **kwargs)


def test_cache_key_rounds_center_to_two_decimals():
    cache = make_cache(FakeClock())
    assert cache.make_key(40.7128, -73.9857, 8000) == "osm:40.71:-73.99:8000"
    assert cache.make_key(40.7149, -73.9851, 8000) == cache.make_key(40.7128, -73.9857, 8000)


def test_build_payload_echoes_query():
    payload = build_payload(40.7, -74.0, 500, [{"id": 1}])
    assert payload["center"] == {"lat": 40.7, "lng": -74.0}
    assert payload["radius"] == 500
    assert payload["markets"] == [{"id": 1}]
    assert payload["fetched_at"].endswith("+00:00")


@pytest.mark.asyncio
async def test_freshness_boundary_at_ttl():
    clock = FakeClock()
    cache = make_cache(clock)
    await cache.put("k", {"markets": []})

    clock.advance(TTL - 0.001)
    assert (await cache.get("k")).is_fresh

    clock.advance(0.002)
    lookup = await cache.get("k")
    assert not lookup.is_fresh
    assert lookup.payload == {"markets": []}
    assert await cache.get("missing") is None


@pytest.mark.asyncio
async def test_miss_fetches_and_stores_then_hits():
    cache = make_cache(FakeClock())
    fetch = CountingFetch()

    first = await cache.get_or_fetch(40.7, -74.0, 1000, fetch)
    second = await cache.get_or_fetch(40.7, -74.0, 1000, fetch)

    assert first == second == {"markets": ["fresh"]}
    assert fetch.calls == 1
    counters = (await metrics.get_metrics())["counters"]
    assert counters["cache_miss:osm"] == 1
    assert counters["cache_hit:osm"] == 1


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch():
    cache = make_cache(FakeClock())
    gate = asyncio.Event()
    fetch = CountingFetch(gate=gate)

    pending = asyncio.gather(*(cache.get_or_fetch(40.7, -74.0, 1000, fetch) for _ in range(5)))
    await asyncio.sleep(0)
    gate.set()
    results = await pending

    assert fetch.calls == 1
    assert all(r == {"markets": ["fresh"]} for r in results)


@pytest.mark.asyncio
async def test_stale_reads_trigger_exactly_one_background_refresh():
    clock = FakeClock()
    cache = make_cache(clock)
    key = cache.make_key(40.7, -74.0, 1000)
    await cache.put(key, {"markets": ["old"]})
    clock.advance(TTL + 0.001)

    gate = asyncio.Event()
    fetch = CountingFetch(payloads=[{"markets": ["new"]}], gate=gate)
    results = await asyncio.gather(*(cache.get_or_fetch(40.7, -74.0, 1000, fetch) for _ in range(5)))

    assert all(r == {"markets": ["old"]} for r in results)
    assert cache.is_refreshing(key)
    task = cache.refresh_in_background(key, fetch)
    gate.set()
    assert await task is True

    assert fetch.calls == 1
    assert not cache.is_refreshing(key)
    lookup = await cache.get(key)
    assert lookup.is_fresh
    assert lookup.payload == {"markets": ["new"]}


@pytest.mark.asyncio
async def test_failed_refresh_keeps_stale_entry_and_next_stale_read_retries():
    clock = FakeClock()
    cache = make_cache(clock)
    key = cache.make_key(40.7, -74.0, 1000)
    await cache.put(key, {"markets": ["old"]})
    clock.advance(TTL + 1)

    fetch = CountingFetch(error=ProviderUnavailableError("502", "overpass"))
    assert await cache.get_or_fetch(40.7, -74.0, 1000, fetch) == {"markets": ["old"]}
    assert await cache.refresh_in_background(key, fetch) is False

    assert await cache.get_or_fetch(40.7, -74.0, 1000, fetch) == {"markets": ["old"]}
    await cache.refresh_in_background(key, fetch)
    assert fetch.calls == 2
    assert (await metrics.get_metrics())["counters"]["cache_refresh_failure"] == 2


@pytest.mark.asyncio
async def test_refresh_timeout():
    clock = FakeClock()
    cache = make_cache(clock, refresh_timeout=0.01)
    await cache.put("k", {"markets": ["old"]})
    fetch = CountingFetch(delay=1.0)
    assert await cache.refresh_in_background("k", fetch) is False
    assert (await cache.get("k")).payload == {"markets": ["old"]}


@pytest.mark.asyncio
async def test_miss_failure_propagates_and_is_not_cached():
    cache = make_cache(FakeClock())
    failing = CountingFetch(error=ProviderUnavailableError("down", "overpass"))
    with pytest.raises(ProviderUnavailableError):
        await cache.get_or_fetch(40.7, -74.0, 1000, failing)
    assert await cache.get(cache.make_key(40.7, -74.0, 1000)) is None


@pytest.mark.asyncio
async def test_write_failure_is_logged_not_raised():
    cache = ResponseCache(RejectingBackend(), ttl_seconds=TTL, clock=FakeClock())
    fetch = CountingFetch()
    assert await cache.put("k", {"markets": []}) is False
    assert await cache.get_or_fetch(1.0, 1.0, 100, fetch) == {"markets": ["fresh"]}
    assert (await metrics.get_metrics())["counters"]["cache_write_failure"] == 2


@pytest.mark.asyncio
async def test_redis_backend_round_trip():
    redis = FakeRedis()
    backend = RedisCacheBackend(redis, retention_seconds=86400)
    entry = CachedResponse(cache_key="osm:1.00:1.00:100", payload={"markets": [1]}, stored_at=5.0)

    await backend.write(entry)

    raw = redis.store["market_cache:osm:1.00:1.00:100"]
    assert json.loads(raw)["stored_at"] == 5.0
    assert redis.expiries["market_cache:osm:1.00:1.00:100"] == 86400
    assert await backend.read("osm:1.00:1.00:100") == entry
    assert await backend.read("nope") is None


@pytest.mark.asyncio
async def test_redis_backend_failures():
    entry = CachedResponse(cache_key="k", payload={}, stored_at=0.0)
    with pytest.raises(CacheWriteError):
        await RedisCacheBackend(FakeRedis(fail_set=True)).write(entry)
    assert await RedisCacheBackend(FakeRedis(fail_get=True)).read("k") is None

    corrupt = FakeRedis()
    corrupt.store["market_cache:k"] = "{not json"
    assert await RedisCacheBackend(corrupt).read("k") is None


@pytest.mark.asyncio
async def test_aclose_cancels_background_refresh():
    cache = make_cache(FakeClock())
    await cache.put("k", {})
    task = cache.refresh_in_background("k", CountingFetch(gate=asyncio.Event()))
    await cache.aclose()
    assert task.cancelled()


@pytest.mark.asyncio
async def test_abandoned_miss_failure_is_not_reported_as_unretrieved():
    loop = asyncio.get_running_loop()
    reported = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        cache = make_cache(FakeClock())
        failing = CountingFetch(error=ProviderUnavailableError("down", "overpass"), delay=0.05)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.get_or_fetch(40.7, -74.0, 1000, failing), timeout=0.01)

        key = cache.make_key(40.7, -74.0, 1000)
        task = cache._fetching[key]
        await asyncio.wait([task])
        await asyncio.sleep(0)
        assert key not in cache._fetching
        del task
        gc.collect()
    finally:
        loop.set_exception_handler(previous)

    assert failing.calls == 1
    assert reported == []
