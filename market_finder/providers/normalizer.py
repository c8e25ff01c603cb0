"""
Map raw provider records onto `MarketRecord`.

This is the only place that knows the OSM tag vocabulary and the Google
Places result shape. Records with no usable coordinates are dropped, not
reported: geo feeds are noisy and one bad element must not fail a batch.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from market_finder.models import (
    Category,
    DietTags,
    DisplayType,
    MarketRecord,
    Provenance,
    display_type_for,
)
from .base import MalformedRecordError
from .chain_filter import ChainFilter
from .scoring import ConfidenceScorer

logger = logging.getLogger(__name__)

SHOP_CATEGORIES = {
    "farm": Category.FARM_SHOP,
    "greengrocer": Category.PRODUCE,
    "produce": Category.PRODUCE,
    "bakery": Category.BAKERY,
    "organic": Category.ORGANIC,
    "health_food": Category.HEALTH_FOOD,
}


def category_from_tags(tags: Dict[str, str]) -> Category:
    if tags.get("amenity") == "marketplace":
        return Category.FARMERS_MARKET
    return SHOP_CATEGORIES.get(tags.get("shop") or "", Category.UNKNOWN)


def diet_from_tags(tags: Dict[str, str], category: Category) -> DietTags:
    return DietTags(
        organic=tags.get("organic") in ("yes", "only") or category == Category.ORGANIC,
        vegan_friendly=tags.get("diet:vegan") == "yes" or tags.get("diet:vegetarian") == "yes",
        gluten_free=tags.get("diet:gluten_free") == "yes",
    )


def category_from_place_types(types: Iterable[str]) -> Category:
    types = [t.lower() for t in types or []]
    if "bakery" in types:
        return Category.BAKERY
    if any("health" in t for t in types):
        return Category.HEALTH_FOOD
    return Category.UNKNOWN


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _osm_street(tags: Dict[str, str]) -> str:
    street = tags.get("addr:street") or ""
    number = tags.get("addr:housenumber") or ""
    return f"{number} {street}".strip() if street else ""


class SourceNormalizer:
    """Normalizes both providers' raw shapes with one shared chain filter and scorer."""

    def __init__(self, chain_filter: Optional[ChainFilter] = None, scorer: Optional[ConfidenceScorer] = None):
        self.chain_filter = chain_filter or ChainFilter()
        self.scorer = scorer or ConfidenceScorer()

    def normalize_osm_element(self, element: Dict[str, Any]) -> MarketRecord:
        """Normalize one Overpass element.

        Raises:
            MalformedRecordError: If the element has no usable coordinates or id
        """
        center = element.get("center") or {}
        lat = _to_float(element.get("lat") if element.get("lat") is not None else center.get("lat"))
        lng = _to_float(element.get("lon") if element.get("lon") is not None else center.get("lon"))
        if lat is None or lng is None:
            raise MalformedRecordError(f"OSM element {element.get('type')}/{element.get('id')} has no coordinates")
        if element.get("id") is None:
            raise MalformedRecordError("OSM element has no id")

        tags = element.get("tags") or {}
        chain = self.chain_filter.is_chain_tags(tags)
        category = category_from_tags(tags)
        return MarketRecord(
            id=f"{element.get('type', 'node')}/{element['id']}",
            name=tags.get("name") or "Unnamed",
            lat=lat,
            lng=lng,
            address=_osm_street(tags),
            city=tags.get("addr:city") or "",
            state=tags.get("addr:state") or "",
            postal_code=tags.get("addr:postcode") or "",
            category=category,
            display_type=display_type_for(category),
            # OSM opening data is too often stale to trust a closed state
            is_open=True,
            hours=tags.get("opening_hours") or None,
            diet=diet_from_tags(tags, category),
            confidence=self.scorer.score(tags, chain),
            is_chain_suspected=chain,
            provenance=Provenance.COMMUNITY,
            source="osm",
            website=tags.get("website") or tags.get("contact:website"),
            phone=tags.get("phone") or tags.get("contact:phone"),
        )

    def normalize_place(self, place: Dict[str, Any]) -> MarketRecord:
        """Normalize one Google Places nearby-search result.

        Raises:
            MalformedRecordError: If the place has no location or place_id
        """
        location = (place.get("geometry") or {}).get("location") or {}
        lat = _to_float(location.get("lat"))
        lng = _to_float(location.get("lng"))
        if lat is None or lng is None:
            raise MalformedRecordError(f"place {place.get('place_id')} has no location")
        if not place.get("place_id"):
            raise MalformedRecordError("place has no place_id")

        category = category_from_place_types(place.get("types") or [])
        display_type = DisplayType.ARTISAN if category != Category.UNKNOWN else DisplayType.FARMERS
        photos = place.get("photos") or []
        name = place.get("name") or ""
        return MarketRecord(
            id=place["place_id"],
            name=name,
            lat=lat,
            lng=lng,
            address=place.get("vicinity") or place.get("formatted_address") or "",
            category=category,
            display_type=display_type,
            is_open=(place.get("opening_hours") or {}).get("open_now"),
            is_chain_suspected=self.chain_filter.is_chain(name),
            provenance=Provenance.COMMUNITY,
            source="google",
            photo_reference=photos[0].get("photo_reference") if photos else None,
        )

    def normalize_osm_elements(self, elements: Iterable[Dict[str, Any]]) -> List[MarketRecord]:
        return self._normalize_many(elements, self.normalize_osm_element)

    def normalize_places(self, places: Iterable[Dict[str, Any]]) -> List[MarketRecord]:
        return self._normalize_many(places, self.normalize_place)

    @staticmethod
    def _normalize_many(raw: Iterable[Dict[str, Any]], fn) -> List[MarketRecord]:
        out = []
        dropped = 0
        for item in raw or []:
            try:
                out.append(fn(item))
            except MalformedRecordError as e:
                dropped += 1
                logger.debug("[normalizer] dropping record: %s", e)
        if dropped:
            logger.debug("[normalizer] dropped %d malformed records", dropped)
        return out
