"""
First-party market records (markets registered directly with us).

These take precedence over any provider record describing the same place.
The real backing store lives outside this package; `InMemoryFirstPartyStore`
serves tests and local runs.
"""
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Dict

from market_finder.models import MarketRecord, Provenance
from market_finder.utils.geo import haversine_meters


class FirstPartyStore(ABC):
    """Read-only view of first-party markets."""

    @abstractmethod
    async def nearby(self, lat: float, lng: float, radius_m: float) -> List[MarketRecord]:
        """Markets within `radius_m` of the point."""
        pass

    @abstractmethod
    async def get(self, market_id: str) -> Optional[MarketRecord]:
        pass


class InMemoryFirstPartyStore(FirstPartyStore):

    def __init__(self, records: Optional[Iterable[MarketRecord]] = None):
        self._records: Dict[str, MarketRecord] = {}
        for record in records or []:
            self.add(record)

    def add(self, record: MarketRecord) -> None:
        record.provenance = Provenance.FIRST_PARTY
        record.source = "db"
        self._records[record.id] = record

    async def nearby(self, lat: float, lng: float, radius_m: float) -> List[MarketRecord]:
        return [
            r for r in self._records.values()
            if haversine_meters(lat, lng, r.lat, r.lng) <= radius_m
        ]

    async def get(self, market_id: str) -> Optional[MarketRecord]:
        return self._records.get(market_id)

    def __len__(self):
        return len(self._records)
