"""
Big-box / chain store detection by substring match over a denylist.

Substring matching is intentional: an independent shop whose name happens
to contain a denylisted fragment is flagged too. For community data the
flag only lowers the confidence score; the places provider drops flagged
records outright.
"""
from typing import Iterable, Optional

from market_finder.config import DEFAULT_CHAIN_DENYLIST


def normalize_str(s: Optional[str]) -> str:
    return (s or "").lower().strip()


class ChainFilter:
    """Classifies business names against a configurable chain denylist."""

    def __init__(self, denylist: Optional[Iterable[str]] = None):
        source = DEFAULT_CHAIN_DENYLIST if denylist is None else denylist
        self.denylist = tuple(frag for frag in (normalize_str(f) for f in source) if frag)

    def is_chain(self, *fields: Optional[str]) -> bool:
        """True if any denylist fragment occurs in the joined, case-folded fields."""
        haystack = normalize_str(" ".join(f for f in fields if f))
        if not haystack:
            return False
        return any(fragment in haystack for fragment in self.denylist)

    def is_chain_tags(self, tags: dict) -> bool:
        """Check an OSM tag dict using its name, operator and brand."""
        return self.is_chain(tags.get("name"), tags.get("operator"), tags.get("brand"))
