"""
Viewport debouncing for interactive map clients.

A map emits a bounds event on every frame of a pan or zoom. This module
turns that stream into a few searches:

- changes smaller than the threshold (on every edge) are ignored
- a qualifying change restarts the debounce timer; a superseded timer
  never fetches
- recently fetched viewports (rounded to 3 decimals) are served from a
  small LRU immediately
- every fetch carries a sequence number taken when it is issued, and a
  completion only replaces the current result if it is newer than the
  last one applied, so a slow old search cannot overwrite a newer one
"""
import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional, Set

from market_finder.models import CategoryFilters, DietFilters, MapBounds
from market_finder.utils.geo import bounds_to_center_radius

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.4
CHANGE_THRESHOLD_DEG = 0.005  # ~500m
LRU_CAPACITY = 5
RESULT_TTL_SECONDS = 300


def bounds_key(bounds: MapBounds) -> str:
    return f"{bounds.north:.3f},{bounds.south:.3f},{bounds.east:.3f},{bounds.west:.3f}"


def bounds_changed(old: Optional[MapBounds], new: MapBounds, threshold: float = CHANGE_THRESHOLD_DEG) -> bool:
    if old is None:
        return True
    return (
        abs(old.north - new.north) > threshold
        or abs(old.south - new.south) > threshold
        or abs(old.east - new.east) > threshold
        or abs(old.west - new.west) > threshold
    )


def viewport_fetcher(aggregator, diet_filters: Optional[DietFilters] = None,
                     category_filters: Optional[CategoryFilters] = None):
    """Build a fetch function that searches the aggregator for a viewport."""
    async def fetch(bounds: MapBounds):
        center, radius = bounds_to_center_radius(bounds)
        return await aggregator.find_nearby_markets(
            center,
            radius_m=radius,
            diet_filters=diet_filters,
            category_filters=category_filters,
            bounds=bounds,
        )
    return fetch


class ViewportDebouncer:
    """Debounced, order-safe viewport search for one map client.

    Args:
        fetch_fn: Coroutine function taking `MapBounds` and returning a result
        debounce_seconds: Quiet period before a search is issued
        threshold_deg: Minimum per-edge change that counts as a move
        lru_capacity: Number of recent viewports remembered
        ttl_seconds: Age after which a remembered viewport is refetched
        on_result: Optional coroutine called with each applied result
        clock: Monotonic time source for the LRU ages
    """

    def __init__(
        self,
        fetch_fn: Callable[[MapBounds], Awaitable[Any]],
        debounce_seconds: float = DEBOUNCE_SECONDS,
        threshold_deg: float = CHANGE_THRESHOLD_DEG,
        lru_capacity: int = LRU_CAPACITY,
        ttl_seconds: float = RESULT_TTL_SECONDS,
        on_result: Optional[Callable[[Any], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch_fn = fetch_fn
        self.debounce_seconds = debounce_seconds
        self.threshold_deg = threshold_deg
        self.lru_capacity = lru_capacity
        self.ttl_seconds = ttl_seconds
        self.on_result = on_result
        self.clock = clock

        self.current_bounds: Optional[MapBounds] = None
        self.last_bounds: Optional[MapBounds] = None
        self.current_result: Any = None
        self._recent: "OrderedDict[str, tuple]" = OrderedDict()
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._issued_seq = 0
        self._applied_seq = 0

    @property
    def is_searching(self) -> bool:
        timer_pending = self._timer is not None and not self._timer.done()
        return timer_pending or bool(self._inflight)

    @property
    def recent_keys(self):
        return list(self._recent.keys())

    def _recall(self, key: str):
        hit = self._recent.get(key)
        if hit is None:
            return None
        result, stored_at = hit
        if self.clock() - stored_at >= self.ttl_seconds:
            del self._recent[key]
            return None
        self._recent.move_to_end(key)
        return hit

    def _remember(self, key: str, result: Any) -> None:
        self._recent[key] = (result, self.clock())
        self._recent.move_to_end(key)
        while len(self._recent) > self.lru_capacity:
            self._recent.popitem(last=False)

    def on_bounds_change(self, bounds: MapBounds) -> None:
        """Feed one bounds event. Must be called from the running event loop."""
        if not bounds_changed(self.last_bounds, bounds, self.threshold_deg):
            return

        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

        key = bounds_key(bounds)
        hit = self._recall(key)
        if hit is not None:
            logger.debug("[viewport] recent viewport %s, no fetch", key)
            self.current_bounds = bounds
            self.last_bounds = bounds
            # newer than anything in flight
            self._issued_seq += 1
            self._applied_seq = self._issued_seq
            self.current_result = hit[0]
            return

        self._timer = asyncio.create_task(self._debounce(bounds, key))

    async def _debounce(self, bounds: MapBounds, key: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._issued_seq += 1
        seq = self._issued_seq
        self.current_bounds = bounds
        self.last_bounds = bounds
        logger.info("[viewport] fetching %s (seq %d)", key, seq)
        task = asyncio.create_task(self._run(seq, bounds, key))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self, seq: int, bounds: MapBounds, key: str) -> None:
        try:
            result = await self.fetch_fn(bounds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[viewport] fetch %d for %s failed", seq, key)
            return

        self._remember(key, result)
        if seq <= self._applied_seq:
            logger.info("[viewport] discarding out-of-order result %d (applied %d)", seq, self._applied_seq)
            return
        self._applied_seq = seq
        self.current_result = result
        if self.on_result is not None:
            await self.on_result(result)

    async def drain(self) -> None:
        """Wait until the pending timer and every issued fetch have finished."""
        if self._timer is not None and not self._timer.done():
            await asyncio.wait([self._timer])
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel the pending timer and in-flight fetches."""
        tasks = list(self._inflight)
        if self._timer is not None and not self._timer.done():
            tasks.append(self._timer)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timer = None
