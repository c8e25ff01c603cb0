"""
Quart app exposing the market search over HTTP.

The app holds one shared aiohttp session and, when reachable, one Redis
client; provider caches fall back to process memory without Redis.
"""
import json
import os
import time
from typing import Any, Dict, Optional

import aiohttp
from quart import Quart, Response, jsonify, request, websocket
from quart_cors import cors, cors_exempt
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from market_finder import __version__, metrics
from market_finder.config import get_config, setup_logging
from market_finder.models import CategoryFilters, Coordinates, DietFilters, MapBounds, MarketRecord
from market_finder.providers.base import ProviderError
from market_finder.providers.caching import (
    CacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    ResponseCache,
    build_payload,
)
from market_finder.providers.first_party import FirstPartyStore, InMemoryFirstPartyStore
from market_finder.providers.multi_provider import MarketAggregator
from market_finder.providers.normalizer import SourceNormalizer
from market_finder.providers.chain_filter import ChainFilter
from market_finder.providers.overpass_provider import OverpassProvider
from market_finder.providers.photo_provider import PhotoResolver
from market_finder.providers.places_provider import GooglePlacesProvider
from market_finder.services.viewport import ViewportDebouncer, viewport_fetcher

PLACES_DEFAULT_RADIUS_M = 24140  # 15 miles

app = Quart(__name__)
app = cors(app, allow_origin="*", allow_methods=["GET", "POST", "OPTIONS"])

# Global async clients
aiohttp_session: Optional[aiohttp.ClientSession] = None
redis_client: Optional[aioredis.Redis] = None


class Services:
    """Everything a request handler needs, built once per process."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        backend: Optional[CacheBackend] = None,
        store: Optional[FirstPartyStore] = None,
        overpass=None,
        places=None,
    ):
        config = get_config()
        chain_filter = ChainFilter(config.provider_config.chain_denylist)
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.store = store if store is not None else InMemoryFirstPartyStore()
        self.normalizer = SourceNormalizer(chain_filter=chain_filter)
        self.overpass = overpass or OverpassProvider(session=session)
        self.places = places or GooglePlacesProvider(chain_filter=chain_filter, session=session)
        self.overpass_cache = ResponseCache(
            self.backend,
            ttl_seconds=config.cache_config.ttl_provider,
            namespace="osm",
            precision=config.cache_config.key_precision,
            refresh_timeout=config.timeout_config.refresh,
        )
        self.places_cache = ResponseCache(
            self.backend,
            ttl_seconds=config.cache_config.ttl_provider,
            namespace="google",
            precision=config.cache_config.key_precision,
            refresh_timeout=config.timeout_config.refresh,
        )
        self.aggregator = MarketAggregator(
            overpass=self.overpass,
            places=self.places,
            first_party=self.store,
            overpass_cache=self.overpass_cache,
            places_cache=self.places_cache,
            normalizer=self.normalizer,
        )
        self.photos = PhotoResolver(backend=self.backend, store=self.store, session=session)

    async def aclose(self) -> None:
        await self.aggregator.aclose()


services: Optional[Services] = None


def get_services() -> Services:
    global services
    if services is None:
        services = Services(session=aiohttp_session)
    return services


@app.before_serving
async def startup():
    global aiohttp_session, redis_client, services
    setup_logging()
    config = get_config()
    aiohttp_session = aiohttp.ClientSession(headers={"User-Agent": f"market-finder/{__version__}"})
    backend: CacheBackend = MemoryCacheBackend()
    if config.redis_url:
        try:
            redis_client = aioredis.from_url(config.redis_url)
            await redis_client.ping()
            backend = RedisCacheBackend(redis_client)
            metrics.set_redis(redis_client)
            app.logger.info("Redis connected")
        except (RedisError, OSError):
            redis_client = None
            app.logger.warning("Redis not available; caching in process memory")
    services = Services(session=aiohttp_session, backend=backend)


@app.after_serving
async def shutdown():
    global aiohttp_session, redis_client, services
    if services is not None:
        await services.aclose()
        services = None
    if aiohttp_session:
        await aiohttp_session.close()
        aiohttp_session = None
    if redis_client:
        await redis_client.close()
        redis_client = None
    metrics.set_redis(None)


def _point(data: Dict[str, Any]) -> Optional[Coordinates]:
    """Read and validate lat/lng from a request body; None if unusable."""
    try:
        lat = float(data["lat"])
        lng = float(data["lng"])
    except (KeyError, TypeError, ValueError):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return Coordinates(lat, lng)


def _present(record: MarketRecord) -> Dict[str, Any]:
    return {**record.to_dict(), **record.schedule()}


def _radius(data: Dict[str, Any], default: int) -> int:
    cap = get_config().aggregator_config.max_radius_m
    try:
        radius = int(data.get("radius") or default)
    except (TypeError, ValueError):
        radius = default
    return max(1, min(radius, cap))


@app.route("/api/nearby-markets", methods=["POST"])
async def nearby_markets():
    """Community (OSM) markets around a point, scored and floored."""
    data = await request.get_json(silent=True) or {}
    point = _point(data)
    if point is None:
        return jsonify({"error": "lat and lng are required"}), 400
    radius = _radius(data, get_config().aggregator_config.default_radius_m)
    svc = get_services()

    async def fetch():
        records = await svc.overpass.fetch_nearby(point.lat, point.lng, radius)
        return build_payload(point.lat, point.lng, radius, records)

    try:
        payload = await svc.overpass_cache.get_or_fetch(point.lat, point.lng, radius, fetch)
    except ProviderError as e:
        app.logger.error("[nearby-markets] overpass failed: %s", e)
        return jsonify({"error": "Overpass API error", "markets": []}), 502

    records = svc.normalizer.normalize_osm_elements(payload.get("markets") or [])
    scorer = svc.normalizer.scorer
    records = sorted((r for r in records if scorer.qualifies(r.confidence)), key=lambda r: r.confidence, reverse=True)
    return jsonify({
        "center": payload.get("center"),
        "radius": payload.get("radius"),
        "markets": [_present(r) for r in records],
        "fetched_at": payload.get("fetched_at"),
    })


@app.route("/api/nearby-google-places", methods=["POST"])
async def nearby_google_places():
    """Commercial (Google Places) markets; `force_refresh` skips the cache read."""
    data = await request.get_json(silent=True) or {}
    point = _point(data)
    if point is None:
        return jsonify({"error": "lat and lng are required"}), 400
    radius = _radius(data, PLACES_DEFAULT_RADIUS_M)
    svc = get_services()

    async def fetch():
        records = await svc.places.fetch_nearby(point.lat, point.lng, radius)
        return build_payload(point.lat, point.lng, radius, records)

    try:
        if data.get("force_refresh"):
            payload = await fetch()
            await svc.places_cache.put(svc.places_cache.make_key(point.lat, point.lng, radius), payload)
        else:
            payload = await svc.places_cache.get_or_fetch(point.lat, point.lng, radius, fetch)
    except ProviderError as e:
        # map clients treat this source as optional
        app.logger.error("[nearby-google-places] places failed: %s", e)
        return jsonify({"error": str(e), "markets": []})

    records = svc.normalizer.normalize_places(payload.get("markets") or [])
    return jsonify({
        "center": payload.get("center"),
        "radius": payload.get("radius"),
        "markets": [_present(r) for r in records],
        "fetched_at": payload.get("fetched_at"),
    })


@app.route("/api/markets/search", methods=["POST"])
async def search_markets():
    data = await request.get_json(silent=True) or {}
    point = _point(data)
    if point is None:
        return jsonify({"error": "lat and lng are required"}), 400
    try:
        bounds = MapBounds.from_dict(data["bounds"]) if data.get("bounds") else None
        limit = int(data["limit"]) if data.get("limit") is not None else None
    except (KeyError, TypeError, ValueError):
        return jsonify({"error": "invalid bounds or limit"}), 400
    if limit is not None and limit < 0:
        return jsonify({"error": "limit must not be negative"}), 400

    start = time.time()
    records = await get_services().aggregator.find_nearby_markets(
        point,
        radius_m=_radius(data, get_config().aggregator_config.default_radius_m),
        diet_filters=DietFilters.from_dict(data.get("diet")),
        category_filters=CategoryFilters.from_dict(data.get("categories")),
        limit=limit,
        bounds=bounds,
    )
    await metrics.observe_latency("search", (time.time() - start) * 1000)
    return jsonify({"markets": [_present(r) for r in records], "count": len(records)})


@app.route("/api/market-photo", methods=["POST"])
async def market_photo():
    data = await request.get_json(silent=True) or {}
    market_id = data.get("marketId")
    name = data.get("name")
    if not market_id or not name:
        return jsonify({"error": "marketId and name are required"}), 400
    point = _point(data)
    photo_url = await get_services().photos.resolve_for(
        str(market_id),
        name,
        address=data.get("address"),
        lat=point.lat if point else None,
        lng=point.lng if point else None,
    )
    if photo_url is None:
        return jsonify({"photoUrl": None, "message": "No photos found"})
    return jsonify({"photoUrl": photo_url})


@app.route("/api/market-photo-proxy", methods=["GET"])
async def market_photo_proxy():
    ref = request.args.get("ref")
    if not ref:
        return jsonify({"error": "Missing 'ref' parameter"}), 400
    try:
        body, content_type = await get_services().photos.fetch_photo(ref)
    except ProviderError as e:
        app.logger.error("[market-photo-proxy] %s", e)
        return jsonify({"error": "Failed to fetch photo"}), 502
    return Response(body, content_type=content_type, headers={"Cache-Control": "public, max-age=86400"})


@app.route("/api/health", methods=["GET"])
async def health():
    svc = get_services()
    providers = await svc.aggregator.health()
    healthy = all(p["status"] == "healthy" for p in providers.values())
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "cache_backend": svc.backend.name,
        "providers": providers,
    })


@app.route("/api/metrics", methods=["GET"])
async def get_metrics():
    return jsonify(await metrics.get_metrics())


def _csv_flags(raw: Optional[str]) -> Dict[str, bool]:
    return {item.strip(): True for item in (raw or "").split(",") if item.strip()}


@app.websocket("/ws/viewport")
@cors_exempt
async def viewport_socket():
    """Stream debounced search results as the client pans its map.

    The client sends `{"bounds": {north, south, east, west}}` messages;
    filters come from the `diet` and `categories` query arguments as
    comma-separated flag names.
    """
    diet = DietFilters.from_dict(_csv_flags(websocket.args.get("diet")))
    categories = CategoryFilters.from_dict(_csv_flags(websocket.args.get("categories")))

    async def push(records):
        await websocket.send(json.dumps({"markets": [_present(r) for r in records]}))

    debouncer = ViewportDebouncer(
        viewport_fetcher(get_services().aggregator, diet, categories),
        ttl_seconds=get_config().cache_config.ttl_query,
        on_result=push,
    )
    try:
        while True:
            message = await websocket.receive()
            try:
                bounds = MapBounds.from_dict(json.loads(message)["bounds"])
            except (KeyError, TypeError, ValueError):
                await websocket.send(json.dumps({"error": "expected {\"bounds\": {...}}"}))
                continue
            had_result = debouncer.current_result
            debouncer.on_bounds_change(bounds)
            if debouncer.current_result is not had_result:
                # served from the recent-viewport memory
                await push(debouncer.current_result)
    finally:
        await debouncer.aclose()


def main():
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5010")))


if __name__ == "__main__":
    main()
