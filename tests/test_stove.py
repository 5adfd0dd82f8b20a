"""Tests for the wood stove data client."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import requests

from cache.fetch_cache import FetchCache
from fakes import FakeResponse, FakeSession
from stove.client import StoveClient

EXPORT = {
    "current_temps": [
        {"nummer": 1, "wert": 21.5},
        {"nummer": 4, "wert": 312.0},
    ],
    "oven_state": {"state": "burning", "last_updated": "2025-01-13T18:00:00Z"},
    "fire_events": [{"id": i, "start": f"2025-01-{i:02d}T18:00:00Z"} for i in range(1, 15)],
    "temperature_history": [],
    "monthly_stats": [],
    "last_updated": "2025-01-13T18:00:00Z",
}


def make_client(*responses, cache=None) -> tuple[StoveClient, FakeSession]:
    session = FakeSession().add("GET", "stove.json", *responses)
    client = StoveClient(cache=cache, session=session)
    client.data_url = "https://pi.example/stove.json"
    return client, session


class TestStoveClient:
    def test_dashboard_data(self):
        client, _ = make_client(FakeResponse(200, EXPORT))
        assert client.get_dashboard_data() == EXPORT

    def test_oven_temperature(self):
        client, _ = make_client(FakeResponse(200, EXPORT))
        assert client.oven_temperature() == 312.0

    def test_recent_fire_events(self):
        client, _ = make_client(FakeResponse(200, EXPORT))
        events = client.recent_fire_events()
        assert len(events) == 10
        assert events[0]["id"] == 1

    def test_http_error_returns_empty(self):
        client, _ = make_client(FakeResponse(502, {}))
        data = client.get_dashboard_data()
        assert data["oven_state"]["state"] == "cold"
        assert data["fire_events"] == []
        assert client.oven_temperature() is None

    def test_connection_error_returns_empty(self):
        client, _ = make_client(requests.ConnectionError("pi offline"))
        assert client.get_dashboard_data()["current_temps"] == []

    def test_not_configured_returns_empty(self):
        client = StoveClient(session=FakeSession())
        client.data_url = ""
        assert client.get_dashboard_data()["oven_state"]["state"] == "cold"

    def test_cache_serves_stale_export(self):
        now = [0.0]
        cache = FetchCache(fetch_timeout_s=None, clock=lambda: now[0])
        client, session = make_client(
            FakeResponse(200, EXPORT), FakeResponse(502, {}), cache=cache
        )
        assert client.get_dashboard_data() == EXPORT
        now[0] += 3600
        assert client.get_dashboard_data() == EXPORT
        assert len(session.calls) == 2
        assert cache.stale_served == 1
        cache.close()
