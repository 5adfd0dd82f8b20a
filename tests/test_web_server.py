"""Tests for the dashboard JSON API routing and error mapping."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from datetime import date

import pytest
import requests

from cache.fetch_cache import FetchCache
from gas.tracker import GasTracker
from grid.periods import GridPeriod
from shelly.rooms import SHELLY_ROOMS
from storage.database import Database
from victron.client import process_solar_data
from web.server import DashboardAPI, start_server


class StubVictron:
    periods = []

    def __init__(self):
        self.requests = []

    def get_stats(self, interval="15mins", type_=None, start=None, end=None, ttl_s=None):
        self.requests.append((interval, type_, start))
        if interval == "days":
            # One month of cumulative counters
            return {"records": {
                "total_consumption": [[start, 100.0], [end, 200.0]],
                "grid_history_from": [[start, 10.0], [end, 30.0]],
            }}
        return {"records": {"Pdc": [[1_700_000_000, 950.0]], "Pg": [[1_700_000_000, -400.0]]}}

    def get_solar_data(self):
        stats = self.get_stats(type_="live_feed")
        return stats, process_solar_data(stats, self.periods)


class StubShelly:
    def __init__(self, failing_device: str | None = None):
        self.failing_device = failing_device

    def get_history(self, device_id, period):
        if device_id == self.failing_device:
            raise RuntimeError("database locked")
        if period not in ("day", "week", "month", "year"):
            raise ValueError("Invalid period parameter. Use: day, week, month, or year")
        return {"readings": [{"timestamp": "2025-01-01T00:00:00", "temperature": 20.0}],
                "period": period, "device_id": device_id}

    def get_flat_sensors(self):
        raise RuntimeError("Shelly API error: 429 - rate limited")


class StubLaundry:
    def __init__(self, stored=None):
        self.stored = stored

    def load(self):
        return self.stored

    def generate(self):
        self.stored = {"best_day": {"date": "04.06"}}
        return self.stored


class StubStove:
    def __init__(self):
        self.limits = []

    def get_dashboard_data(self):
        return {"oven_state": {"state": "cold"}}

    def oven_temperature(self):
        return 312.0

    def recent_fire_events(self, limit=10):
        self.limits.append(limit)
        return [{"id": i} for i in range(1, 15)][:limit]


class StubWeather:
    def get_weather(self):
        return {"current": {"temp": 5}}


def make_api(**overrides) -> DashboardAPI:
    parts = {
        "cache": FetchCache(fetch_timeout_s=None),
        "victron": StubVictron(),
        "shelly": StubShelly(),
        "weather": StubWeather(),
        "stove": StubStove(),
        "gas": GasTracker(Database(":memory:")),
        "laundry": StubLaundry(),
    }
    parts.update(overrides)
    return DashboardAPI(**parts)


class TestRouting:
    def setup_method(self):
        self.api = make_api()

    def teardown_method(self):
        self.api.cache.close()

    def test_unknown_path(self):
        status, body = self.api.dispatch("GET", "/api/nope")
        assert status == 404
        assert "error" in body

    def test_wrong_method(self):
        assert self.api.dispatch("DELETE", "/api/weather")[0] == 405
        assert self.api.dispatch("POST", "/api/gas/1")[0] == 405

    def test_simple_reads(self):
        assert self.api.dispatch("GET", "/api/data") == (200, {"oven_state": {"state": "cold"}})
        assert self.api.dispatch("GET", "/api/weather") == (200, {"current": {"temp": 5}})
        status, stats = self.api.dispatch("GET", "/api/cache")
        assert status == 200
        assert stats["size"] == 0

    def test_solar_stats(self):
        status, body = self.api.dispatch(
            "GET", "/api/solar/stats", {"interval": "hours", "type": "live_feed"}
        )
        assert status == 200
        assert body["processed"]["grid_status"] == "grid_feeding"
        assert body["processed"]["current_power"] == 950.0
        assert "Pdc" in body["raw"]["records"]
        assert self.api.victron.requests == [("hours", "live_feed", None)]

    def test_solar_stats_default_interval(self):
        self.api.dispatch("GET", "/api/solar/stats")
        assert self.api.victron.requests[0][0] == "15mins"

    def test_solar_live(self):
        status, body = self.api.dispatch("GET", "/api/solar/live")
        assert status == 200
        assert body["processed"]["grid_status"] == "grid_feeding"
        assert body["raw"]["records"]["Pdc"] == [[1_700_000_000, 950.0]]
        assert self.api.victron.requests == [("15mins", "live_feed", None)]

    def test_solar_costs(self):
        status, body = self.api.dispatch("GET", "/api/solar/costs")
        assert status == 200
        # 12 months of 100 kWh consumption, 20 kWh of it from the grid
        assert body["consumption"] == pytest.approx(1200.0)
        assert body["grid_import"] == pytest.approx(240.0)
        assert body["neighbor_cost"] == pytest.approx(66.48)
        assert body["solar_savings"] == pytest.approx(265.92)
        assert body["self_consumption"] == pytest.approx(960.0)
        assert body["formatted"]["cost_without_solar"] == "CHF 332.40"
        assert body["price_label"] == "28 Rp/kWh"

    def test_grid_periods(self):
        self.api.victron.periods = [
            GridPeriod(date(2024, 1, 1), date(2024, 1, 31)),
            GridPeriod(date(2024, 11, 1), None),
        ]
        status, body = self.api.dispatch("GET", "/api/grid/periods")
        assert status == 200
        closed, open_ = body["periods"]
        assert closed == {"gridOn": "2024-01-01", "gridOff": "2024-01-31", "days": 30, "active": False}
        assert open_["gridOff"] is None
        assert open_["active"] is True
        assert open_["days"] > 300

    def test_stove_status(self):
        status, body = self.api.dispatch("GET", "/api/stove/status")
        assert status == 200
        assert body["oven_temperature"] == 312.0
        assert len(body["fire_events"]) == 10

        status, body = self.api.dispatch("GET", "/api/stove/status", {"limit": "3"})
        assert [e["id"] for e in body["fire_events"]] == [1, 2, 3]
        assert self.api.dispatch("GET", "/api/stove/status", {"limit": "0"})[0] == 400
        assert self.api.dispatch("GET", "/api/stove/status", {"limit": "x"})[0] == 400

    def test_upstream_failure_is_500(self):
        status, body = self.api.dispatch("GET", "/api/shelly/sensors")
        assert status == 500
        assert "429" in body["error"]


class TestShellyRoutes:
    def test_history_requires_device(self):
        api = make_api()
        status, body = api.dispatch("GET", "/api/shelly/history", {"period": "day"})
        assert status == 400
        assert "deviceId" in body["error"]

    def test_history_invalid_period(self):
        api = make_api()
        status, _ = api.dispatch("GET", "/api/shelly/history", {"deviceId": "a", "period": "x"})
        assert status == 400

    def test_history_all_isolates_room_errors(self):
        failing = SHELLY_ROOMS[1].device_id
        api = make_api(shelly=StubShelly(failing_device=failing))
        status, body = api.dispatch("GET", "/api/shelly/history-all", {"period": "week"})

        assert status == 200
        assert body["period"] == "week"
        assert len(body["rooms"]) == len(SHELLY_ROOMS)
        by_id = {r["deviceId"]: r for r in body["rooms"]}
        assert by_id[failing]["readings"] == []
        assert by_id[SHELLY_ROOMS[0].device_id]["readings"]

    def test_history_all_requires_period(self):
        assert make_api().dispatch("GET", "/api/shelly/history-all")[0] == 400


class TestLaundryRoutes:
    def test_no_forecast_yet(self):
        status, _ = make_api().dispatch("GET", "/api/laundry-forecast")
        assert status == 404

    def test_generate_then_read(self):
        api = make_api()
        status, body = api.dispatch("POST", "/api/laundry-forecast/generate")
        assert status == 200
        assert body["success"] is True
        assert api.dispatch("GET", "/api/laundry-forecast") == (200, {"best_day": {"date": "04.06"}})


class TestGasRoutes:
    def setup_method(self):
        self.api = make_api()

    def test_create_list_update_delete(self):
        status, bottle = self.api.dispatch(
            "POST", "/api/gas", body={"startDate": "2025-10-01", "notes": "Landi"}
        )
        assert status == 201
        assert bottle["notes"] == "Landi"

        status, bottles = self.api.dispatch("GET", "/api/gas")
        assert status == 200
        assert [b["id"] for b in bottles] == [bottle["id"]]

        path = f"/api/gas/{bottle['id']}"
        status, updated = self.api.dispatch("PUT", path, body={"endDate": "2025-12-01"})
        assert status == 200
        assert updated["end_date"] == "2025-12-01"

        assert self.api.dispatch("DELETE", path) == (200, {"success": True})
        assert self.api.dispatch("DELETE", path)[0] == 404

    def test_validation_errors(self):
        assert self.api.dispatch("POST", "/api/gas", body={})[0] == 400
        self.api.dispatch("POST", "/api/gas", body={"startDate": "2025-10-01"})
        status, body = self.api.dispatch("POST", "/api/gas", body={"startDate": "2025-11-01"})
        assert status == 400
        assert "active" in body["error"]

    def test_update_unknown_bottle(self):
        status, body = self.api.dispatch("PUT", "/api/gas/42", body={"endDate": "2025-12-01"})
        assert status == 404
        assert body == {"error": "Gasflasche nicht gefunden"}

    def test_update_requires_end_date(self):
        assert self.api.dispatch("PUT", "/api/gas/1", body={})[0] == 400


class TestHttpServer:
    def setup_method(self):
        self.api = make_api()
        self.server = start_server(self.api, 0)
        self.base = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self):
        self.server.shutdown()
        self.server.server_close()
        self.api.cache.close()

    def test_json_round_trip(self):
        resp = requests.post(f"{self.base}/api/gas", json={"startDate": "2025-10-01"}, timeout=5)
        assert resp.status_code == 201
        assert resp.headers["Content-Type"].startswith("application/json")

        resp = requests.get(f"{self.base}/api/gas", timeout=5)
        assert resp.json()[0]["start_date"] == "2025-10-01"

    def test_query_string(self):
        resp = requests.get(
            f"{self.base}/api/shelly/history", params={"deviceId": "a", "period": "week"}, timeout=5
        )
        assert resp.status_code == 200
        assert resp.json()["period"] == "week"

    def test_invalid_json_body(self):
        resp = requests.post(
            f"{self.base}/api/gas", data="{oops", timeout=5,
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
