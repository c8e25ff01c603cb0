"""Fakes shared by the test modules."""
import asyncio

from market_finder.providers.base import Provider


class FakeResponse:
    def __init__(self, status, payload=None, body=b"", headers=None, raise_on_enter=None):
        self.status = status
        self._payload = payload
        self._body = body
        self.headers = headers or {}
        self._raise = raise_on_enter

    async def __aenter__(self):
        if self._raise is not None:
            raise self._raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return str(self._payload)

    async def read(self):
        return self._body


class FakeSession:
    """Returns queued or computed responses and records every call.

    `responder` is either a FakeResponse (returned for every call) or a
    callable taking (method, url, kwargs) and returning one.
    """

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def _respond(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        if callable(self.responder):
            return self.responder(method, url, kwargs)
        return self.responder

    def get(self, url, **kwargs):
        return self._respond("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, kwargs)


class StubProvider(Provider):
    """Provider returning canned raw records.

    `records` may be a list, an exception instance to raise, or a dict
    mapping radius to list (missing radii fall back to the `None` entry).
    """

    def __init__(self, records=None, delay=0.0, name="stub"):
        super().__init__()
        self.records = records if records is not None else []
        self.delay = delay
        self.name = name
        self.calls = []

    async def fetch_nearby(self, lat, lng, radius_m):
        self.calls.append((lat, lng, radius_m))
        if self.delay:
            await asyncio.sleep(self.delay)
        records = self.records
        if isinstance(records, Exception):
            raise records
        if isinstance(records, dict):
            records = records.get(radius_m, records.get(None, []))
        return list(records)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def osm_node(node_id, lat, lng, **tags):
    return {"type": "node", "id": node_id, "lat": lat, "lon": lng, "tags": tags}


def place(place_id, lat, lng, name="Indie Market", types=None, open_now=None, photo_ref=None):
    result = {
        "place_id": place_id,
        "name": name,
        "geometry": {"location": {"lat": lat, "lng": lng}},
        "vicinity": "1 Main St",
        "types": types or ["store"],
    }
    if open_now is not None:
        result["opening_hours"] = {"open_now": open_now}
    if photo_ref:
        result["photos"] = [{"photo_reference": photo_ref}]
    return result
