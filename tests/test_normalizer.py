import pytest

from market_finder.models import Category, DisplayType, Provenance
from market_finder.providers.base import MalformedRecordError
from market_finder.providers.normalizer import SourceNormalizer

from helpers import osm_node, place


def test_osm_node_normalized():
    element = osm_node(
        123, 40.7359, -73.9911,
        name="Union Square Greenmarket",
        amenity="marketplace",
        opening_hours="Mon, Wed, Fri, Sat 8am-6pm",
        **{"addr:street": "Broadway", "addr:housenumber": "1", "addr:city": "New York",
           "addr:postcode": "10003", "diet:vegan": "yes", "contact:website": "https://grownyc.org"},
    )
    record = SourceNormalizer().normalize_osm_element(element)
    assert record.id == "node/123"
    assert record.name == "Union Square Greenmarket"
    assert (record.lat, record.lng) == (40.7359, -73.9911)
    assert record.address == "1 Broadway"
    assert record.city == "New York"
    assert record.state == ""
    assert record.postal_code == "10003"
    assert record.category == Category.FARMERS_MARKET
    assert record.display_type == DisplayType.FARMERS
    assert record.is_open is True
    assert record.diet.vegan_friendly and not record.diet.gluten_free
    # marketplace 3 + hours + website + street
    assert record.confidence == 6
    assert record.provenance == Provenance.COMMUNITY
    assert record.source == "osm"
    assert record.website == "https://grownyc.org"


def test_way_uses_center_and_zero_is_a_coordinate():
    n = SourceNormalizer()
    way = {"type": "way", "id": 9, "center": {"lat": 51.5, "lon": -0.1}, "tags": {"shop": "bakery"}}
    record = n.normalize_osm_element(way)
    assert (record.lat, record.lng) == (51.5, -0.1)
    assert record.name == "Unnamed"
    assert record.display_type == DisplayType.ARTISAN

    equator = n.normalize_osm_element(osm_node(1, 0.0, 0.0, shop="organic"))
    assert (equator.lat, equator.lng) == (0.0, 0.0)
    assert equator.diet.organic


def test_malformed_osm_elements():
    n = SourceNormalizer()
    with pytest.raises(MalformedRecordError):
        n.normalize_osm_element({"type": "node", "id": 5, "tags": {}})
    good = osm_node(6, 1.0, 1.0, amenity="marketplace")
    records = n.normalize_osm_elements([{"type": "node", "id": 5}, good, {"lat": 1, "lon": 1}])
    assert [r.id for r in records] == ["node/6"]


def test_chain_osm_element_flagged_and_penalized():
    record = SourceNormalizer().normalize_osm_element(
        osm_node(7, 1.0, 1.0, name="Whole Foods Market", shop="organic")
    )
    assert record.is_chain_suspected
    assert record.confidence == 2 - 4


def test_place_normalized():
    raw = place("abc", 40.0, -75.0, name="Crust Bakery", types=["bakery", "store"],
                open_now=False, photo_ref="ref-1")
    record = SourceNormalizer().normalize_place(raw)
    assert record.id == "abc"
    assert record.category == Category.BAKERY
    assert record.display_type == DisplayType.ARTISAN
    assert record.is_open is False
    assert record.address == "1 Main St"
    assert record.source == "google"
    assert record.photo_reference == "ref-1"


def test_place_without_known_type_and_hours():
    record = SourceNormalizer().normalize_place(place("xyz", 40.0, -75.0, types=["grocery_or_supermarket"]))
    assert record.category == Category.UNKNOWN
    assert record.display_type == DisplayType.FARMERS
    assert record.is_open is None
    assert record.photo_reference is None


def test_places_without_location_dropped():
    raw = {"place_id": "nowhere", "name": "Ghost", "geometry": {}}
    assert SourceNormalizer().normalize_places([raw, place("ok", 1.0, 1.0)])[0].id == "ok"
