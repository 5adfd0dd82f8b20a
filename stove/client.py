"""Wood-stove data exported by the Raspberry Pi.

The Pi publishes its SQLite contents as one JSON document (current
temperatures, oven state, fire events, monthly stats). The dashboard only
ever reads it, so failures degrade to an empty document.
"""

import logging
from datetime import datetime, timezone

import requests

import config
from cache.fetch_cache import FetchCache, FetchTimeoutError

logger = logging.getLogger(__name__)


def empty_dashboard_data() -> dict:
    now = datetime.now(timezone.utc).isoformat()
    return {
        "current_temps": [],
        "oven_state": {"state": "cold", "last_updated": now},
        "fire_events": [],
        "temperature_history": [],
        "monthly_stats": [],
        "last_updated": now,
    }


class StoveClient:
    def __init__(self, cache: FetchCache | None = None, session: requests.Session | None = None):
        self.cache = cache
        self.session = session or requests.Session()
        self.data_url = config.stove.data_url
        self.oven_sensor = config.stove.oven_sensor_number

    def fetch_dashboard_data(self) -> dict:
        if not self.data_url:
            raise RuntimeError("STOVE_DATA_URL not configured")
        resp = self.session.get(self.data_url, timeout=30)
        resp.raise_for_status()
        return resp.json()

    def get_dashboard_data(self) -> dict:
        try:
            if self.cache is None:
                return self.fetch_dashboard_data()
            return self.cache.get_or_fetch(
                "stove:dashboard", config.cache.stove_ttl_s, self.fetch_dashboard_data
            )
        except (requests.RequestException, FetchTimeoutError, ValueError, RuntimeError) as e:
            logger.error("Stove data unavailable, returning empty data: %s", e)
            return empty_dashboard_data()

    def recent_fire_events(self, limit: int = 10) -> list[dict]:
        return self.get_dashboard_data().get("fire_events", [])[:limit]

    def oven_temperature(self) -> float | None:
        for reading in self.get_dashboard_data().get("current_temps", []):
            if reading.get("nummer") == self.oven_sensor:
                return reading.get("wert")
        return None
