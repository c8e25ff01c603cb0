"""
Confidence scoring for community-sourced (OSM) records.

The score is an additive heuristic over tag completeness. It is not a
probability; records below the floor are excluded and the rest are ranked
by score, highest first.
"""

from typing import Dict, Optional

from market_finder.config import get_config

MARKETPLACE_POINTS = 3
SPECIALTY_SHOP_POINTS = 2
SIGNAL_POINTS = 1
CHAIN_PENALTY = 4

SPECIALTY_SHOPS = frozenset({"farm", "greengrocer", "produce", "bakery", "organic", "health_food"})


class ConfidenceScorer:
    """Scores raw OSM tag dicts.

    Args:
        chain_penalty: Points removed for a suspected chain
        minimum: Inclusion floor used by `qualifies`; defaults to the
            configured `MIN_CONFIDENCE`
    """

    def __init__(self, chain_penalty: int = CHAIN_PENALTY, minimum: Optional[int] = None):
        self.chain_penalty = chain_penalty
        self.minimum = minimum if minimum is not None else get_config().aggregator_config.min_confidence

    @staticmethod
    def positive_signals(tags: Dict[str, str]) -> int:
        score = 0
        if tags.get("amenity") == "marketplace":
            score += MARKETPLACE_POINTS
        if (tags.get("shop") or "") in SPECIALTY_SHOPS:
            score += SPECIALTY_SHOP_POINTS

        if tags.get("opening_hours"):
            score += SIGNAL_POINTS
        if tags.get("phone") or tags.get("contact:phone"):
            score += SIGNAL_POINTS
        if tags.get("website") or tags.get("contact:website"):
            score += SIGNAL_POINTS
        if tags.get("addr:street"):
            score += SIGNAL_POINTS
        if tags.get("local_produce") == "yes":
            score += SIGNAL_POINTS
        if tags.get("organic") in ("yes", "only"):
            score += SIGNAL_POINTS
        return score

    def score(self, tags: Optional[Dict[str, str]], is_chain: bool) -> int:
        total = self.positive_signals(tags or {})
        if is_chain:
            total -= self.chain_penalty
        return total

    def qualifies(self, score: int) -> bool:
        return score >= self.minimum
