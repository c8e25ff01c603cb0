"""Overpass (OpenStreetMap) provider for community-sourced market features.

The Overpass query language can run unbounded on dense areas, so every call
carries a hard client-side timeout on top of the server-side `[timeout:25]`.
"""
from typing import Optional, List, Dict, Any

import aiohttp

from market_finder.config import get_config
from .base import Provider, ProviderUnavailableError
from .utils import http_post_json, USER_AGENT

OVERPASS_URL = "https://overpass-api.de/api/interpreter"

# (key, value) pairs queried with nwr[...](around:...)
MARKET_SELECTORS = [
    ("amenity", "marketplace"),
    ("shop", "greengrocer"),
    ("shop", "farm"),
    ("shop", "produce"),
    ("shop", "bakery"),
    ("shop", "organic"),
    ("shop", "health_food"),
]


def build_overpass_query(lat: float, lng: float, radius_m: int, server_timeout: int = 25) -> str:
    """Build the Overpass QL query for market-like features around a point."""
    around = f"(around:{int(radius_m)},{lat},{lng})"
    lines = [f'  nwr["{key}"="{value}"]{around};' for key, value in MARKET_SELECTORS]
    # co-ops are tagged inconsistently; match on operator or name
    lines.append(f'  nwr["shop"="supermarket"]["operator"~"co[- ]?op|cooperative",i]{around};')
    lines.append(f'  nwr["name"~"co[- ]?op|cooperative",i]{around};')
    body = "\n".join(lines)
    return f"[out:json][timeout:{server_timeout}];\n(\n{body}\n);\nout center tags;\n"


class OverpassProvider(Provider):
    """Community geo-data client over the public Overpass API (no key)."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__()
        config = get_config()
        self.url = url or config.provider_config.overpass_url or OVERPASS_URL
        self.timeout = timeout if timeout is not None else config.timeout_config.overpass
        self.session = session

    async def fetch_nearby(self, lat: float, lng: float, radius_m: int) -> List[Dict[str, Any]]:
        query = build_overpass_query(lat, lng, radius_m)
        self.logger.info("[overpass] querying %.4f,%.4f radius=%dm", lat, lng, radius_m)
        data = await http_post_json(
            self.url,
            data={"data": query},
            headers={"User-Agent": USER_AGENT},
            timeout=self.timeout,
            session=self.session,
            provider="overpass",
        )
        if not isinstance(data, dict) or not isinstance(data.get("elements", []), list):
            raise ProviderUnavailableError("unexpected Overpass response shape", "overpass")
        elements = data.get("elements", [])
        self.logger.info("[overpass] returned %d elements", len(elements))
        return elements
