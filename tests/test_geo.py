import math

import pytest

from market_finder.models import Coordinates, MapBounds
from market_finder.utils.geo import (
    bbox_contains,
    bounds_to_center_radius,
    haversine_distance,
    haversine_meters,
)


def test_haversine_identity_and_symmetry():
    assert haversine_meters(40.7128, -74.0060, 40.7128, -74.0060) == 0
    ab = haversine_meters(40.7128, -74.0060, 34.0522, -118.2437)
    ba = haversine_meters(34.0522, -118.2437, 40.7128, -74.0060)
    assert ab == pytest.approx(ba)


def test_one_degree_of_latitude():
    # R * pi / 180
    assert haversine_meters(0, 0, 1, 0) == pytest.approx(111194.93, rel=1e-6)


def test_new_york_to_los_angeles():
    d = haversine_distance(Coordinates(40.7128, -74.0060), Coordinates(34.0522, -118.2437))
    assert d == pytest.approx(3_935_746, abs=5_000)


@pytest.mark.parametrize("lat,lng", [(91, 0), (-90.5, 0), (0, 180.1), (0, -181)])
def test_out_of_range_coordinates_raise(lat, lng):
    with pytest.raises(ValueError):
        haversine_meters(lat, lng, 0, 0)


def test_bounds_to_center_radius():
    bounds = MapBounds(north=41.0, south=40.0, east=-73.0, west=-74.0)
    center, radius = bounds_to_center_radius(bounds)
    assert center == Coordinates(40.5, -73.5)
    assert radius == math.ceil(haversine_meters(40.0, -74.0, 41.0, -73.0) / 2)
    assert isinstance(radius, int)


def test_bounds_with_north_below_south_rejected():
    with pytest.raises(ValueError):
        bounds_to_center_radius(MapBounds(north=40.0, south=41.0, east=-73.0, west=-74.0))


def test_bbox_helpers():
    a = MapBounds(north=41.0, south=40.0, east=-73.0, west=-74.0)
    assert bbox_contains(a, 40.5, -73.5)
    assert not bbox_contains(a, 42.0, -73.5)
