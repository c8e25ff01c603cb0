"""
Photo resolution for market cards.

Google photo URLs need the API key, so clients only ever see a proxy URL
(`/api/market-photo-proxy?ref=...`) and the proxy fetches the image
server-side. Lookups by name are cached write-through, including "no photo"
answers, so each market costs at most one find-place call.
"""
import asyncio
import logging
import time
from typing import Optional, Tuple
from urllib.parse import quote

import aiohttp

from market_finder.config import get_config
from market_finder.models import CachedResponse, MarketRecord
from .base import (
    CacheWriteError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from .caching import CacheBackend, MemoryCacheBackend
from .first_party import FirstPartyStore
from .utils import get_session, http_get_json

logger = logging.getLogger(__name__)

FIND_PLACE_URL = "https://maps.googleapis.com/maps/api/place/findplacefromtext/json"
PHOTO_URL = "https://maps.googleapis.com/maps/api/place/photo"
PROXY_PATH = "/api/market-photo-proxy"
MAX_WIDTH = 800


def proxy_url(photo_reference: str, base: str = PROXY_PATH) -> str:
    return f"{base}?ref={quote(photo_reference, safe='')}"


class PhotoResolver:
    """Resolves a displayable photo URL for a market."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        backend: Optional[CacheBackend] = None,
        store: Optional[FirstPartyStore] = None,
        timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
        proxy_base: str = PROXY_PATH,
    ):
        config = get_config()
        self.api_key = api_key or config.provider_config.google_places_api_key
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.store = store
        self.timeout = timeout if timeout is not None else config.timeout_config.photo
        self.session = session
        self.proxy_base = proxy_base

    @staticmethod
    def _cache_key(market_id: str) -> str:
        return f"photo:{market_id}"

    async def _remember(self, market_id: str, photo_reference: Optional[str]) -> None:
        entry = CachedResponse(
            cache_key=self._cache_key(market_id),
            payload={"photo_reference": photo_reference},
            stored_at=time.time(),
        )
        try:
            await self.backend.write(entry)
        except CacheWriteError as e:
            logger.error("[photo] failed to cache photo for %s: %s", market_id, e)

        if self.store is not None and photo_reference:
            record = await self.store.get(market_id)
            if record is not None:
                record.photo_reference = photo_reference
                record.photo_url = proxy_url(photo_reference, self.proxy_base)

    async def find_photo_reference(
        self,
        name: str,
        address: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> Optional[str]:
        """Look a place up by text and return its first photo reference.

        Raises:
            ProviderError: If the lookup itself fails
        """
        params = {
            "input": f"{name} {address or ''}".strip(),
            "inputtype": "textquery",
            "fields": "place_id,photos",
            "key": self.api_key,
        }
        if lat is not None and lng is not None:
            params["locationbias"] = f"point:{lat},{lng}"
        data = await http_get_json(
            FIND_PLACE_URL, params=params, timeout=self.timeout, session=self.session, provider="google_photos"
        )
        candidates = (data or {}).get("candidates") or []
        photos = (candidates[0].get("photos") or []) if candidates else []
        if not photos:
            return None
        return photos[0].get("photo_reference")

    async def resolve(self, market: MarketRecord) -> Optional[str]:
        """Return a photo URL for `market`, or None when there is none."""
        return await self.resolve_for(
            market.id,
            market.name,
            address=market.address,
            lat=market.lat,
            lng=market.lng,
            photo_url=market.photo_url,
            photo_reference=market.photo_reference,
        )

    async def resolve_for(
        self,
        market_id: str,
        name: str,
        address: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        photo_url: Optional[str] = None,
        photo_reference: Optional[str] = None,
    ) -> Optional[str]:
        """Resolve a photo URL from loose market fields.

        Lookup failures return None and are not cached, so a later call
        retries.
        """
        if photo_url:
            return photo_url
        if photo_reference:
            return proxy_url(photo_reference, self.proxy_base)

        if self.store is not None:
            record = await self.store.get(market_id)
            if record is not None and record.photo_url:
                return record.photo_url

        cached = await self.backend.read(self._cache_key(market_id))
        if cached is not None:
            ref = cached.payload.get("photo_reference")
            logger.debug("[photo] cache hit for %s", market_id)
            return proxy_url(ref, self.proxy_base) if ref else None

        if not self.api_key:
            logger.warning("[photo] GOOGLE_PLACES_API_KEY not configured, skipping lookup for %s", market_id)
            return None

        try:
            ref = await self.find_photo_reference(name, address, lat, lng)
        except ProviderError as e:
            logger.warning("[photo] lookup failed for %s: %s", name, e)
            return None

        await self._remember(market_id, ref)
        if ref is None:
            logger.info("[photo] no photos found for %s", name)
            return None
        logger.info("[photo] cached photo for %s", name)
        return proxy_url(ref, self.proxy_base)

    async def fetch_photo(self, photo_reference: str) -> Tuple[bytes, str]:
        """Download the image behind a photo reference.

        Returns:
            Tuple of (image bytes, content type)

        Raises:
            ProviderUnavailableError: If the key is missing or Google refuses
            ProviderTimeoutError: If the download exceeds the timeout
        """
        if not self.api_key:
            raise ProviderUnavailableError("GOOGLE_PLACES_API_KEY not configured", "google_photos")
        params = {"maxwidth": str(MAX_WIDTH), "photo_reference": photo_reference, "key": self.api_key}
        try:
            async with get_session(self.session) as sess:
                async with sess.get(PHOTO_URL, params=params,
                                    timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    if resp.status != 200:
                        raise ProviderUnavailableError(
                            f"photo fetch returned HTTP {resp.status}", "google_photos", {"status": resp.status}
                        )
                    body = await resp.read()
                    return body, resp.headers.get("Content-Type", "image/jpeg")
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(f"photo fetch timed out after {self.timeout}s", "google_photos")
        except aiohttp.ClientError as e:
            raise ProviderUnavailableError(str(e), "google_photos")
