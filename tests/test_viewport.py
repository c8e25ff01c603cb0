import asyncio

import pytest

from market_finder.models import MapBounds
from market_finder.services.viewport import (
    ViewportDebouncer,
    bounds_changed,
    bounds_key,
    viewport_fetcher,
)
from market_finder.utils.geo import bounds_to_center_radius

from helpers import FakeClock

DEBOUNCE = 0.01


def box(north, south=None, east=-73.9, west=-74.0):
    return MapBounds(north=north, south=north - 0.1 if south is None else south, east=east, west=west)


class RecordingFetch:
    def __init__(self, gates=None, error=None):
        self.calls = []
        self.gates = gates or {}
        self.error = error

    async def __call__(self, bounds):
        self.calls.append(bounds)
        gate = self.gates.get(bounds.north)
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        return f"result@{bounds.north}"


def test_bounds_key_and_change_threshold():
    assert bounds_key(box(40.71234)) == "40.712,40.612,-73.900,-74.000"
    assert bounds_changed(None, box(40.7))
    assert not bounds_changed(box(40.7), box(40.704, south=40.6))
    assert bounds_changed(box(40.7), box(40.706, south=40.6))


@pytest.mark.asyncio
async def test_debounced_fetch_applies_result():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE)

    d.on_bounds_change(box(40.7))
    assert d.is_searching
    await d.drain()

    assert fetch.calls == [box(40.7)]
    assert d.current_result == "result@40.7"
    assert d.current_bounds == box(40.7)
    assert not d.is_searching


@pytest.mark.asyncio
async def test_rapid_changes_fetch_only_the_last():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE)
    for north in (40.7, 40.8, 40.9):
        d.on_bounds_change(box(north))
    await d.drain()
    assert fetch.calls == [box(40.9)]


@pytest.mark.asyncio
async def test_small_moves_ignored():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE)
    d.on_bounds_change(box(40.7))
    await d.drain()
    d.on_bounds_change(box(40.702, south=40.6))
    assert not d.is_searching
    await d.drain()
    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_recent_viewport_served_without_delay_or_fetch():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE)
    for north in (40.7, 40.8):
        d.on_bounds_change(box(north))
        await d.drain()

    d.on_bounds_change(box(40.7))

    assert d.current_result == "result@40.7"
    assert not d.is_searching
    assert len(fetch.calls) == 2
    assert d.recent_keys[-1] == bounds_key(box(40.7))


@pytest.mark.asyncio
async def test_lru_evicts_oldest_viewport():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE, lru_capacity=2)
    for north in (40.7, 40.8, 40.9, 40.7):
        d.on_bounds_change(box(north))
        await d.drain()
    assert [b.north for b in fetch.calls] == [40.7, 40.8, 40.9, 40.7]
    assert len(d.recent_keys) == 2


@pytest.mark.asyncio
async def test_recent_viewport_expires_after_ttl():
    clock = FakeClock()
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE, ttl_seconds=300, clock=clock)
    for north in (40.7, 40.8):
        d.on_bounds_change(box(north))
        await d.drain()
    clock.advance(301)
    d.on_bounds_change(box(40.7))
    await d.drain()
    assert len(fetch.calls) == 3


@pytest.mark.asyncio
async def test_out_of_order_completion_is_discarded():
    gates = {40.7: asyncio.Event(), 40.9: asyncio.Event()}
    fetch = RecordingFetch(gates=gates)
    applied = []

    async def on_result(result):
        applied.append(result)

    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE, on_result=on_result)

    d.on_bounds_change(box(40.7))
    await asyncio.sleep(DEBOUNCE * 5)
    d.on_bounds_change(box(40.9))
    await asyncio.sleep(DEBOUNCE * 5)
    assert len(fetch.calls) == 2

    gates[40.9].set()
    await asyncio.sleep(DEBOUNCE)
    assert d.current_result == "result@40.9"

    gates[40.7].set()
    await d.drain()
    assert d.current_result == "result@40.9"
    assert applied == ["result@40.9"]
    # the slow result is still remembered for its own viewport
    assert bounds_key(box(40.7)) in d.recent_keys


@pytest.mark.asyncio
async def test_fetch_failure_keeps_previous_result():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE)
    d.on_bounds_change(box(40.7))
    await d.drain()

    fetch.error = RuntimeError("boom")
    d.on_bounds_change(box(40.9))
    await d.drain()
    assert d.current_result == "result@40.7"
    assert not d.is_searching


@pytest.mark.asyncio
async def test_aclose_cancels_pending_timer():
    fetch = RecordingFetch()
    d = ViewportDebouncer(fetch, debounce_seconds=DEBOUNCE)
    d.on_bounds_change(box(40.7))
    await d.aclose()
    await asyncio.sleep(DEBOUNCE * 3)
    assert fetch.calls == []
    assert not d.is_searching


class StubAggregator:
    def __init__(self):
        self.calls = []

    async def find_nearby_markets(self, center, **kwargs):
        self.calls.append((center, kwargs))
        return []


@pytest.mark.asyncio
async def test_viewport_fetcher_searches_center_and_radius():
    agg = StubAggregator()
    bounds = box(40.8, south=40.7)
    await viewport_fetcher(agg)(bounds)

    center, kwargs = agg.calls[0]
    expected_center, expected_radius = bounds_to_center_radius(bounds)
    assert center == expected_center
    assert kwargs["radius_m"] == expected_radius
    assert kwargs["bounds"] == bounds
