"""JSON API for the home dashboard.

Routes are resolved by DashboardAPI.dispatch so they can be exercised without
a socket; DashboardHandler only moves bytes in and out.
"""

import http.server
import json
import logging
import re
import threading
import time
from urllib.parse import parse_qs, urlsplit

from cache.fetch_cache import FetchCache
from gas.tracker import GasTracker
from grid.periods import is_active, period_days
from laundry.advisor import LaundryAdvisor
from pricing.electricity import PRICE_CHF_PER_KWH, calculate_costs, format_chf, format_rappen
from shelly.client import PERIOD_WINDOWS, ShellyClient
from shelly.rooms import SHELLY_ROOMS, get_all_device_ids
from stove.client import StoveClient
from victron import history
from victron.client import VictronClient, process_solar_data
from weather.client import WeatherClient

logger = logging.getLogger(__name__)

_GAS_ITEM = re.compile(r"^/api/gas/(\d+)$")


class HttpError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class DashboardAPI:
    def __init__(
        self,
        cache: FetchCache,
        victron: VictronClient,
        shelly: ShellyClient,
        weather: WeatherClient,
        stove: StoveClient,
        gas: GasTracker,
        laundry: LaundryAdvisor,
    ):
        self.cache = cache
        self.victron = victron
        self.shelly = shelly
        self.weather = weather
        self.stove = stove
        self.gas = gas
        self.laundry = laundry

        self.routes = {
            ("GET", "/api/data"): self.stove_data,
            ("GET", "/api/stove/status"): self.stove_status,
            ("GET", "/api/solar/stats"): self.solar_stats,
            ("GET", "/api/solar/live"): self.solar_live,
            ("GET", "/api/solar/costs"): self.solar_costs,
            ("GET", "/api/grid/periods"): self.grid_periods,
            ("GET", "/api/solar/peak"): self.solar_peak,
            ("GET", "/api/solar/history/days"): self.solar_days,
            ("GET", "/api/solar/history/months"): self.solar_months,
            ("GET", "/api/solar/history/autarky"): self.solar_autarky,
            ("GET", "/api/solar/history/peaks"): self.solar_peaks,
            ("GET", "/api/shelly"): self.shelly_raw,
            ("GET", "/api/shelly/sensors"): self.shelly_sensors,
            ("GET", "/api/shelly/collect"): self.shelly_collect,
            ("GET", "/api/shelly/history"): self.shelly_history,
            ("GET", "/api/shelly/history-all"): self.shelly_history_all,
            ("GET", "/api/weather"): self.weather_data,
            ("GET", "/api/laundry-forecast"): self.laundry_forecast,
            ("GET", "/api/laundry-forecast/generate"): self.laundry_generate,
            ("POST", "/api/laundry-forecast/generate"): self.laundry_generate,
            ("GET", "/api/gas"): self.gas_list,
            ("POST", "/api/gas"): self.gas_create,
            ("GET", "/api/cache"): self.cache_stats,
        }

    def dispatch(
        self, method: str, path: str, query: dict | None = None, body: dict | None = None
    ) -> tuple[int, object]:
        """Run one request; returns (HTTP status, JSON-serialisable payload)."""
        query = query or {}
        body = body or {}
        try:
            handler = self.routes.get((method, path))
            if handler is not None:
                return handler(query, body)

            m = _GAS_ITEM.match(path)
            if m and method == "PUT":
                return self.gas_mark_empty(int(m.group(1)), body)
            if m and method == "DELETE":
                return self.gas_delete(int(m.group(1)))

            if any(p == path for _, p in self.routes) or m:
                raise HttpError(405, f"Method {method} not allowed")
            raise HttpError(404, f"Not found: {path}")

        except HttpError as e:
            return e.status, {"error": e.message}
        except ValueError as e:
            logger.warning("%s %s rejected: %s", method, path, e)
            return 400, {"error": str(e)}
        except Exception as e:
            logger.exception("%s %s failed", method, path)
            return 500, {"error": str(e) or e.__class__.__name__}

    # -- Stove --

    def stove_data(self, query, body):
        return 200, self.stove.get_dashboard_data()

    def stove_status(self, query, body):
        limit = int(query.get("limit") or 10)
        if limit < 1:
            raise ValueError("limit must be positive")
        return 200, {
            "oven_temperature": self.stove.oven_temperature(),
            "fire_events": self.stove.recent_fire_events(limit),
        }

    # -- Solar --

    def solar_stats(self, query, body):
        interval = query.get("interval") or "15mins"
        stats = self.victron.get_stats(interval, query.get("type"), query.get("start"))
        processed = process_solar_data(stats, self.victron.periods)
        return 200, {
            "raw": stats,
            "processed": processed.to_dict(),
            "timestamp": int(time.time() * 1000),
        }

    def solar_live(self, query, body):
        stats, processed = self.victron.get_solar_data()
        return 200, {
            "raw": stats,
            "processed": processed.to_dict(),
            "timestamp": int(time.time() * 1000),
        }

    def solar_costs(self, query, body):
        """Electricity costs for the current year, priced per kWh of grid import."""
        year = history.fetch_autarky_stats(self.victron)
        costs = calculate_costs(year["total_consumption"], year["grid_history_from"])
        return 200, {
            **costs.to_dict(),
            "formatted": {
                "neighbor_cost": format_chf(costs.neighbor_cost),
                "solar_savings": format_chf(costs.solar_savings),
                "cost_without_solar": format_chf(costs.cost_without_solar),
            },
            "price_per_kwh": PRICE_CHF_PER_KWH,
            "price_label": format_rappen(PRICE_CHF_PER_KWH) + "/kWh",
            "consumption": year["total_consumption"],
            "grid_import": year["grid_history_from"],
        }

    def grid_periods(self, query, body):
        return 200, {"periods": [
            {**p.to_dict(), "days": period_days(p), "active": is_active(p)}
            for p in self.victron.periods
        ]}

    def solar_peak(self, query, body):
        return 200, history.fetch_today_peak_power(self.victron)

    def solar_days(self, query, body):
        return 200, {"days": history.fetch_last_7_days(self.victron)}

    def solar_months(self, query, body):
        return 200, {"months": history.fetch_last_24_months(self.victron)}

    def solar_autarky(self, query, body):
        return 200, history.fetch_autarky_stats(self.victron)

    def solar_peaks(self, query, body):
        return 200, {"peaks": history.fetch_last_30_days_peak_power(self.victron)}

    # -- Shelly --

    def shelly_raw(self, query, body):
        device_ids = get_all_device_ids()
        if not device_ids:
            raise ValueError("No Shelly device IDs configured")
        sensors = self.shelly.fetch_sensors(device_ids)
        return 200, {"sensors": [s.to_dict() for s in sensors]}

    def shelly_sensors(self, query, body):
        return 200, {"sensors": self.shelly.get_flat_sensors()}

    def shelly_collect(self, query, body):
        return 200, self.shelly.collect()

    def shelly_history(self, query, body):
        device_id = query.get("deviceId")
        if not device_id:
            raise ValueError("deviceId parameter is required")
        period = query.get("period") or "day"
        return 200, self.shelly.get_history(device_id, period)

    def shelly_history_all(self, query, body):
        period = query.get("period")
        if period not in PERIOD_WINDOWS:
            raise ValueError("Invalid period parameter. Use: day, week, month, or year")

        rooms = []
        for room in SHELLY_ROOMS:
            try:
                readings = self.shelly.get_history(room.device_id, period)["readings"]
            except Exception as e:
                logger.error("History for %s failed: %s", room.name, e)
                readings = []
            rooms.append({
                "deviceId": room.device_id,
                "name": room.name,
                "slug": room.slug,
                "readings": readings,
            })
        return 200, {"rooms": rooms, "period": period}

    # -- Weather / laundry --

    def weather_data(self, query, body):
        return 200, self.weather.get_weather()

    def laundry_forecast(self, query, body):
        forecast = self.laundry.load()
        if forecast is None:
            raise HttpError(404, "No forecast available yet")
        return 200, forecast

    def laundry_generate(self, query, body):
        forecast = self.laundry.generate()
        return 200, {"success": True, "forecast": forecast}

    # -- Gas --

    def gas_list(self, query, body):
        return 200, [b.to_dict() for b in self.gas.list_bottles()]

    def gas_create(self, query, body):
        bottle = self.gas.create_bottle(
            body.get("startDate"), body.get("type"), body.get("notes")
        )
        return 201, bottle.to_dict()

    def gas_mark_empty(self, bottle_id: int, body: dict):
        bottle = self.gas.mark_empty(bottle_id, body.get("endDate"))
        if bottle is None:
            raise HttpError(404, "Gasflasche nicht gefunden")
        return 200, bottle.to_dict()

    def gas_delete(self, bottle_id: int):
        if not self.gas.delete_bottle(bottle_id):
            raise HttpError(404, "Gasflasche nicht gefunden")
        return 200, {"success": True}

    def cache_stats(self, query, body):
        return 200, self.cache.stats()


def make_handler(api: DashboardAPI) -> type[http.server.BaseHTTPRequestHandler]:
    class DashboardHandler(http.server.BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _send_json(self, data, status=200):
            payload = json.dumps(data, ensure_ascii=False).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(payload)))
            self.send_header("Access-Control-Allow-Origin", "*")
            self.end_headers()
            self.wfile.write(payload)

        def _handle(self, method: str):
            url = urlsplit(self.path)
            query = {k: v[0] for k, v in parse_qs(url.query).items()}
            body = None
            length = int(self.headers.get("Content-Length", 0))
            if length:
                try:
                    body = json.loads(self.rfile.read(length))
                except json.JSONDecodeError:
                    self._send_json({"error": "Invalid JSON body"}, 400)
                    return
                if not isinstance(body, dict):
                    self._send_json({"error": "JSON body must be an object"}, 400)
                    return
            status, data = api.dispatch(method, url.path, query, body)
            self._send_json(data, status)

        def do_GET(self):
            self._handle("GET")

        def do_POST(self):
            self._handle("POST")

        def do_PUT(self):
            self._handle("PUT")

        def do_DELETE(self):
            self._handle("DELETE")

    return DashboardHandler


def start_server(api: DashboardAPI, port: int) -> http.server.ThreadingHTTPServer:
    """Serve the API from a background daemon thread."""
    server = http.server.ThreadingHTTPServer(("", port), make_handler(api))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("Dashboard API at http://localhost:%d/api/", port)
    return server
