"""
Aggregate markets from the community and commercial providers.

Both providers are queried concurrently, each through its own
stale-while-revalidate cache and with its own timeout. A provider that fails
or times out contributes nothing; the search still resolves. Results are
normalized, community records are scored and floored, sparse areas pull in
commercial results and then a wider community search, and everything is
merged against first-party records before filtering and sorting.
"""
import asyncio
import logging
import math
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from market_finder import metrics
from market_finder.config import AggregatorConfig, get_config
from market_finder.models import (
    Category,
    CategoryFilters,
    Coordinates,
    DietFilters,
    DisplayType,
    MapBounds,
    MarketRecord,
)
from market_finder.utils.geo import bbox_contains, haversine_distance, haversine_meters, validate_point
from .base import Provider, ProviderError
from .caching import ResponseCache, build_payload
from .first_party import FirstPartyStore
from .normalizer import SourceNormalizer
from .overpass_provider import OverpassProvider
from .places_provider import GooglePlacesProvider

logger = logging.getLogger(__name__)

# category filter -> (display type, matching categories, name fragments)
CATEGORY_RULES = {
    "farmers_market": (DisplayType.FARMERS, {Category.FARMERS_MARKET}, ("farmer", "greenmarket")),
    "farm_stand": (None, {Category.FARM_SHOP, Category.PRODUCE}, ("farm stand", "farmstand", "produce")),
    "bakery": (DisplayType.ARTISAN, {Category.BAKERY}, ("bakery", "bread")),
    "organic_grocery": (None, {Category.ORGANIC, Category.HEALTH_FOOD}, ("organic", "health food", "co-op", "coop")),
}


def merge_markets(
    primary: List[MarketRecord],
    secondary: Iterable[MarketRecord],
    distance_m: float,
) -> List[MarketRecord]:
    """Return `primary` plus every `secondary` record not within `distance_m` of a primary one.

    Secondary records are compared against `primary` only, so two secondary
    records close to each other both survive.
    """
    merged = list(primary)
    for candidate in secondary:
        duplicate = any(
            haversine_meters(p.lat, p.lng, candidate.lat, candidate.lng) < distance_m
            for p in primary
        )
        if not duplicate:
            merged.append(candidate)
    return merged


def unique_by_id(records: Iterable[MarketRecord]) -> List[MarketRecord]:
    seen = set()
    out = []
    for r in records:
        if r.id in seen:
            continue
        seen.add(r.id)
        out.append(r)
    return out


def matches_diet(record: MarketRecord, filters: Optional[DietFilters]) -> bool:
    if filters is None:
        return True
    if filters.organic and not record.diet.organic:
        return False
    if filters.vegan_friendly and not record.diet.vegan_friendly:
        return False
    if filters.gluten_free and not record.diet.gluten_free:
        return False
    return True


def matches_category(record: MarketRecord, filters: Optional[CategoryFilters]) -> bool:
    active = filters.active() if filters is not None else []
    if not active:
        return True
    name = (record.name or "").lower()
    for key in active:
        display_type, categories, fragments = CATEGORY_RULES[key]
        if record.display_type == display_type or record.category in categories:
            return True
        if any(f in name for f in fragments):
            return True
    return False


class MarketAggregator:
    """Runs one nearby-market search across every source.

    Args:
        overpass: Community provider
        places: Commercial provider
        first_party: Store of first-party markets, optional
        overpass_cache: Cache in front of the community provider
        places_cache: Cache in front of the commercial provider
        normalizer: Shared normalizer (chain filter and scorer live here)
        settings: Thresholds; defaults to the process config
        overpass_timeout: Seconds allowed for one community fetch
        places_timeout: Seconds allowed for one commercial fetch
    """

    def __init__(
        self,
        overpass: Optional[Provider] = None,
        places: Optional[Provider] = None,
        first_party: Optional[FirstPartyStore] = None,
        overpass_cache: Optional[ResponseCache] = None,
        places_cache: Optional[ResponseCache] = None,
        normalizer: Optional[SourceNormalizer] = None,
        settings: Optional[AggregatorConfig] = None,
        overpass_timeout: Optional[float] = None,
        places_timeout: Optional[float] = None,
    ):
        config = get_config()
        self.overpass = overpass or OverpassProvider()
        self.places = places or GooglePlacesProvider()
        self.first_party = first_party
        self.overpass_cache = overpass_cache or ResponseCache(
            ttl_seconds=config.cache_config.ttl_provider,
            namespace="osm",
            refresh_timeout=config.timeout_config.refresh,
        )
        self.places_cache = places_cache or ResponseCache(
            ttl_seconds=config.cache_config.ttl_provider,
            namespace="google",
            refresh_timeout=config.timeout_config.refresh,
        )
        self.normalizer = normalizer or SourceNormalizer()
        self.settings = settings or config.aggregator_config
        self.overpass_timeout = overpass_timeout or config.timeout_config.overpass
        self.places_timeout = places_timeout or config.timeout_config.places

    async def _fetch_cached(
        self,
        name: str,
        provider: Provider,
        cache: ResponseCache,
        lat: float,
        lng: float,
        radius_m: int,
        timeout: float,
    ) -> List[Dict[str, Any]]:
        async def fetch():
            records = await provider.fetch_nearby(lat, lng, radius_m)
            return build_payload(lat, lng, radius_m, records)

        start = time.time()
        try:
            payload = await asyncio.wait_for(cache.get_or_fetch(lat, lng, radius_m, fetch), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[aggregator] %s timed out after %ss", name, timeout)
            await metrics.increment(f"provider_failure:{name}")
            return []
        except ProviderError as e:
            logger.warning("[aggregator] %s failed: %s", name, e)
            await metrics.increment(f"provider_failure:{name}")
            return []
        finally:
            await metrics.observe_latency(f"provider:{name}", (time.time() - start) * 1000)
        return (payload or {}).get("markets") or []

    async def _community(self, lat: float, lng: float, radius_m: int) -> List[MarketRecord]:
        raw = await self._fetch_cached(
            "overpass", self.overpass, self.overpass_cache, lat, lng, radius_m, self.overpass_timeout
        )
        return self._qualify(self.normalizer.normalize_osm_elements(raw))

    async def _commercial(self, lat: float, lng: float, radius_m: int) -> List[MarketRecord]:
        raw = await self._fetch_cached(
            "google_places", self.places, self.places_cache, lat, lng, radius_m, self.places_timeout
        )
        return self.normalizer.normalize_places(raw)

    async def _first_party(self, lat: float, lng: float, radius_m: int) -> List[MarketRecord]:
        if self.first_party is None:
            return []
        return await self.first_party.nearby(lat, lng, radius_m)

    def _qualify(self, records: List[MarketRecord]) -> List[MarketRecord]:
        """Drop community records under the confidence floor, best first."""
        kept = [r for r in records if self.normalizer.scorer.qualifies(r.confidence)]
        kept.sort(key=lambda r: r.confidence, reverse=True)
        return kept

    async def find_nearby_markets(
        self,
        center: Coordinates,
        radius_m: Optional[int] = None,
        diet_filters: Optional[DietFilters] = None,
        category_filters: Optional[CategoryFilters] = None,
        limit: Optional[int] = None,
        bounds: Optional[MapBounds] = None,
    ) -> List[MarketRecord]:
        """Search every source around `center`.

        Provider failures never propagate; if every source is down the
        result is an empty list.

        Args:
            center: Query center
            radius_m: Search radius, capped at the configured maximum
            diet_filters: All active flags must match
            category_filters: Any active category must match
            limit: Maximum number of records returned
            bounds: When given, records outside the viewport are dropped

        Returns:
            Records sorted by ascending distance from `center`

        Raises:
            ValueError: If `center` is not a valid coordinate
        """
        validate_point(center.lat, center.lng)
        s = self.settings
        radius = min(int(radius_m or s.default_radius_m), s.max_radius_m)
        limit = s.result_limit if limit is None else max(0, limit)
        lat, lng = center.lat, center.lng

        community, commercial, owned = await asyncio.gather(
            self._community(lat, lng, radius),
            self._commercial(lat, lng, radius),
            self._first_party(lat, lng, radius),
            return_exceptions=True,
        )
        for label, res in (("community", community), ("commercial", commercial), ("first_party", owned)):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                logger.error("[aggregator] %s source raised: %r", label, res)
        community = community if isinstance(community, list) else []
        commercial = commercial if isinstance(commercial, list) else []
        owned = owned if isinstance(owned, list) else []

        combined = community
        if len(community) < s.sparse_community_threshold:
            combined = merge_markets(community, commercial, s.duplicate_distance_m)
            logger.debug(
                "[aggregator] sparse community (%d), merged commercial -> %d", len(community), len(combined)
            )

        if len(combined) < s.sparse_total_threshold and radius < s.max_radius_m:
            wider = min(int(math.ceil(radius * s.radius_expansion)), s.max_radius_m)
            logger.info("[aggregator] only %d results, widening %dm -> %dm", len(combined), radius, wider)
            await metrics.increment("aggregator_widen")
            extra = await self._community(lat, lng, wider)
            known = {r.id for r in combined}
            combined = merge_markets(combined, (r for r in extra if r.id not in known), s.duplicate_distance_m)

        records = merge_markets(owned, combined, s.first_party_distance_m)
        records = unique_by_id(records)

        results = []
        for r in records:
            if not matches_diet(r, diet_filters) or not matches_category(r, category_filters):
                continue
            if bounds is not None and not bbox_contains(bounds, r.lat, r.lng):
                continue
            # store records are shared; distance belongs to this query only
            results.append(replace(r, distance_m=haversine_distance(center, Coordinates(r.lat, r.lng))))
        results.sort(key=lambda r: r.distance_m)

        logger.info(
            "[aggregator] %.4f,%.4f r=%dm: community=%d commercial=%d first_party=%d -> %d",
            lat, lng, radius, len(community), len(commercial), len(owned), len(results),
        )
        return results[:limit]

    async def health(self) -> Dict[str, Any]:
        """Run both provider health checks concurrently."""
        overpass, places = await asyncio.gather(self.overpass.health_check(), self.places.health_check())
        return {"overpass": overpass.to_dict(), "google_places": places.to_dict()}

    async def aclose(self) -> None:
        await asyncio.gather(self.overpass_cache.aclose(), self.places_cache.aclose())
