"""
Google Places provider for discovering markets near a point.

Nearby Search only accepts one keyword per request, so a query fans out
into one request per configured keyword, run concurrently, and the results
are merged by `place_id`.
"""
import asyncio
from typing import Optional, List, Dict, Any, Iterable

import aiohttp

from market_finder.config import get_config
from market_finder.utils.geo import haversine_meters
from .base import (
    Provider,
    ProviderError,
    ProviderRateLimitError,
    ProviderUnavailableError,
)
from .chain_filter import ChainFilter
from .utils import http_get_json

PLACES_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"

# Places results slightly past the radius are kept
MAX_DISTANCE_FACTOR = 1.05


def dedupe_by_place_id(batches: Iterable[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    seen = set()
    out = []
    for places in batches:
        for place in places:
            place_id = place.get("place_id")
            if not place_id or place_id in seen:
                continue
            seen.add(place_id)
            out.append(place)
    return out


def filter_places(
    places: List[Dict[str, Any]],
    lat: float,
    lng: float,
    radius_m: int,
    chain_filter: ChainFilter,
) -> List[Dict[str, Any]]:
    """Drop chains and far-away places, nearest first.

    Places without a location are passed through untouched; the normalizer
    discards them later.
    """
    max_distance = radius_m * MAX_DISTANCE_FACTOR
    kept = []
    for place in places:
        if chain_filter.is_chain(place.get("name")):
            continue
        location = (place.get("geometry") or {}).get("location") or {}
        if location.get("lat") is None or location.get("lng") is None:
            kept.append((float("inf"), place))
            continue
        try:
            distance = haversine_meters(lat, lng, float(location["lat"]), float(location["lng"]))
        except (TypeError, ValueError):
            continue
        if distance <= max_distance:
            kept.append((distance, place))
    kept.sort(key=lambda pair: pair[0])
    return [place for _, place in kept]


class GooglePlacesProvider(Provider):
    """Commercial places client (API-key authenticated)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        keywords: Optional[List[str]] = None,
        chain_filter: Optional[ChainFilter] = None,
        timeout: Optional[float] = None,
        url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the Google Places provider.

        Args:
            api_key: Places API key (falls back to GOOGLE_PLACES_API_KEY)
            keywords: Keyword list for the fan-out (falls back to config)
            chain_filter: Chain classifier used to drop big-box results
            timeout: Per-request timeout in seconds
            url: Nearby Search endpoint override
            session: Optional shared aiohttp session
        """
        super().__init__()
        config = get_config()
        self.api_key = api_key or config.provider_config.google_places_api_key
        self.keywords = list(keywords or config.provider_config.places_keywords)
        self.chain_filter = chain_filter or ChainFilter(config.provider_config.chain_denylist)
        self.timeout = timeout if timeout is not None else config.timeout_config.places
        self.url = url or config.provider_config.places_url or PLACES_URL
        self.session = session

    async def _search_keyword(self, lat: float, lng: float, radius_m: int, keyword: str) -> List[Dict[str, Any]]:
        params = {
            "location": f"{lat},{lng}",
            "radius": str(int(radius_m)),
            "keyword": keyword,
            "key": self.api_key,
        }
        data = await http_get_json(
            self.url, params=params, timeout=self.timeout, session=self.session, provider="google_places"
        )
        status = (data or {}).get("status")
        if status == "OVER_QUERY_LIMIT":
            raise ProviderRateLimitError(f"rate limited for {keyword!r}", "google_places")
        if status not in ("OK", "ZERO_RESULTS"):
            raise ProviderUnavailableError(
                f"status {status} for {keyword!r}: {(data or {}).get('error_message', '')}",
                "google_places",
                {"status": status},
            )
        return data.get("results") or []

    async def fetch_nearby(self, lat: float, lng: float, radius_m: int) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise ProviderUnavailableError("GOOGLE_PLACES_API_KEY not configured", "google_places")

        results = await asyncio.gather(
            *(self._search_keyword(lat, lng, radius_m, kw) for kw in self.keywords),
            return_exceptions=True,
        )

        batches = []
        errors = []
        for keyword, res in zip(self.keywords, results):
            if isinstance(res, ProviderError):
                self.logger.warning("[places] keyword %r failed: %s", keyword, res)
                errors.append(res)
                continue
            if isinstance(res, BaseException):
                raise res
            batches.append(res)

        if self.keywords and len(errors) == len(self.keywords):
            raise ProviderUnavailableError(
                f"all {len(errors)} keyword searches failed", "google_places", {"last_error": str(errors[-1])}
            )

        places = dedupe_by_place_id(batches)
        places = filter_places(places, lat, lng, radius_m, self.chain_filter)
        self.logger.info("[places] %d keyword searches -> %d places", len(self.keywords), len(places))
        return places
