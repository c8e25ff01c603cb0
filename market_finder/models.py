"""
Domain models shared by the providers, the aggregator and the HTTP layer.

Every provider response is normalized into a `MarketRecord` before it
reaches the aggregator, so downstream code never deals with raw provider
shapes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from market_finder.utils.market_hours import next_open_time, parse_hours, resolve_open_state


class Category(Enum):
    """Canonical market category."""
    FARMERS_MARKET = "farmers_market"
    FARM_SHOP = "farm_shop"
    PRODUCE = "produce"
    BAKERY = "bakery"
    ORGANIC = "organic"
    HEALTH_FOOD = "health_food"
    UNKNOWN = "unknown"


class DisplayType(Enum):
    """Coarse bucket used for map pin styling."""
    FARMERS = "farmers"
    ARTISAN = "artisan"


class Provenance(Enum):
    """Which kind of source produced a record. Governs merge precedence."""
    FIRST_PARTY = "first_party"
    COMMUNITY = "community"


ARTISAN_CATEGORIES = frozenset({Category.BAKERY, Category.ORGANIC, Category.HEALTH_FOOD})


def display_type_for(category: Category) -> DisplayType:
    if category in ARTISAN_CATEGORIES:
        return DisplayType.ARTISAN
    return DisplayType.FARMERS


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class MapBounds:
    """Visible map viewport in WGS84 degrees."""
    north: float
    south: float
    east: float
    west: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MapBounds":
        return cls(
            north=float(data["north"]),
            south=float(data["south"]),
            east=float(data["east"]),
            west=float(data["west"]),
        )


@dataclass
class DietTags:
    organic: bool = False
    vegan_friendly: bool = False
    gluten_free: bool = False


@dataclass
class DietFilters:
    """Active diet filter toggles. All active filters must match (AND)."""
    organic: bool = False
    vegan_friendly: bool = False
    gluten_free: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DietFilters":
        data = data or {}
        return cls(
            organic=bool(data.get("organic")),
            vegan_friendly=bool(data.get("vegan_friendly") or data.get("veganFriendly")),
            gluten_free=bool(data.get("gluten_free") or data.get("glutenFree")),
        )


@dataclass
class CategoryFilters:
    """Active category buttons. A record passes if it matches any of them (OR)."""
    farmers_market: bool = False
    farm_stand: bool = False
    bakery: bool = False
    organic_grocery: bool = False

    def active(self) -> list:
        return [name for name, on in asdict(self).items() if on]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CategoryFilters":
        data = data or {}
        return cls(
            farmers_market=bool(data.get("farmers_market")),
            farm_stand=bool(data.get("farm_stand")),
            bakery=bool(data.get("bakery")),
            organic_grocery=bool(data.get("organic_grocery")),
        )


@dataclass
class MarketRecord:
    """Canonical unit of the domain."""
    id: str
    name: str
    lat: float
    lng: float
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    category: Category = Category.UNKNOWN
    display_type: DisplayType = DisplayType.FARMERS
    is_open: Optional[bool] = None
    hours: Optional[str] = None
    diet: DietTags = field(default_factory=DietTags)
    confidence: int = 0
    is_chain_suspected: bool = False
    provenance: Provenance = Provenance.COMMUNITY
    source: str = "osm"
    website: Optional[str] = None
    phone: Optional[str] = None
    photo_reference: Optional[str] = None
    photo_url: Optional[str] = None
    distance_m: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "lat": self.lat,
            "lng": self.lng,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "category": self.category.value,
            "display_type": self.display_type.value,
            "is_open": self.is_open,
            "hours": self.hours,
            "diet": asdict(self.diet),
            "confidence": self.confidence,
            "is_chain_suspected": self.is_chain_suspected,
            "provenance": self.provenance.value,
            "source": self.source,
            "website": self.website,
            "phone": self.phone,
            "photo_reference": self.photo_reference,
            "photo_url": self.photo_url,
            "distance_m": self.distance_m,
        }

    def schedule(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Open state and "next opens" label derived from `hours`.

        An unparseable or missing schedule falls back to the provider flag
        and reports no label.
        """
        return {
            "open_now": resolve_open_state(self.hours, self.is_open, now),
            "next_opens": next_open_time(self.hours, now),
            "hours_known": parse_hours(self.hours) is not None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketRecord":
        diet = data.get("diet") or {}
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            address=data.get("address") or "",
            city=data.get("city") or "",
            state=data.get("state") or "",
            postal_code=data.get("postal_code") or "",
            category=Category(data.get("category") or "unknown"),
            display_type=DisplayType(data.get("display_type") or "farmers"),
            is_open=data.get("is_open"),
            hours=data.get("hours"),
            diet=DietTags(
                organic=bool(diet.get("organic")),
                vegan_friendly=bool(diet.get("vegan_friendly")),
                gluten_free=bool(diet.get("gluten_free")),
            ),
            confidence=int(data.get("confidence") or 0),
            is_chain_suspected=bool(data.get("is_chain_suspected")),
            provenance=Provenance(data.get("provenance") or "community"),
            source=data.get("source") or "osm",
            website=data.get("website"),
            phone=data.get("phone"),
            photo_reference=data.get("photo_reference"),
            photo_url=data.get("photo_url"),
            distance_m=data.get("distance_m"),
        )


@dataclass
class CachedResponse:
    """A provider response stored under a geographic cell key.

    `payload` holds `center`, `radius`, the raw `markets` list and
    `fetched_at`. `stored_at` comes from the cache's injected clock.
    """
    cache_key: str
    payload: Dict[str, Any]
    stored_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"cache_key": self.cache_key, "payload": self.payload, "stored_at": self.stored_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedResponse":
        return cls(
            cache_key=data["cache_key"],
            payload=data["payload"],
            stored_at=float(data["stored_at"]),
        )
