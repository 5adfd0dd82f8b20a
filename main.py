"""Home Dashboard - Main Process

Starts the JSON API and runs the background jobs:
1. Collect Shelly sensor readings into SQLite (every few hours)
2. Regenerate the laundry forecast (daily, early morning)
3. Prune old sensor readings (weekly)
"""

import logging
import signal
import sys
import time

import schedule

import config
from cache.fetch_cache import FetchCache
from gas.tracker import GasTracker
from grid.periods import load_grid_periods
from laundry.advisor import LaundryAdvisor
from shelly.client import ShellyClient
from stove.client import StoveClient
from storage.database import Database
from victron.client import VictronClient
from weather.client import WeatherClient
from web.server import DashboardAPI, start_server

logging.basicConfig(
    level=getattr(logging, config.system.log_level),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger("home_dashboard")


class HomeDashboard:
    def __init__(self):
        self.db = Database()
        self.cache = FetchCache(fetch_timeout_s=config.cache.fetch_timeout_s)
        self.periods = load_grid_periods(config.system.grid_periods_path)
        self.weather = WeatherClient(self.cache)
        self.victron = VictronClient(self.db, self.cache, self.periods)
        self.shelly = ShellyClient(self.db, self.cache, self.weather)
        self.stove = StoveClient(self.cache)
        self.gas = GasTracker(self.db)
        self.laundry = LaundryAdvisor(self.weather)
        self.api = DashboardAPI(
            self.cache, self.victron, self.shelly, self.weather,
            self.stove, self.gas, self.laundry,
        )
        self._server = None
        self._running = True

    def collect_shelly(self):
        try:
            self.shelly.collect()
        except Exception as e:
            logger.exception("Shelly collection failed: %s", e)

    def generate_laundry_forecast(self):
        try:
            self.laundry.generate()
        except Exception as e:
            logger.exception("Laundry forecast generation failed: %s", e)

    def prune(self):
        try:
            self.db.prune_old_records()
        except Exception as e:
            logger.exception("Pruning old records failed: %s", e)

    def start(self):
        logger.info("Home Dashboard starting")
        logger.info("Grid periods loaded: %d", len(self.periods))
        logger.info(
            "Cache TTLs: shelly=%ds victron=%ds weather=%ds, fetch timeout %ss",
            config.cache.shelly_ttl_s, config.cache.victron_ttl_s,
            config.cache.weather_ttl_s, config.cache.fetch_timeout_s,
        )

        self._server = start_server(self.api, config.system.dashboard_port)

        schedule.every(config.system.shelly_collect_interval_h).hours.do(self.collect_shelly)
        schedule.every().day.at(config.system.laundry_generate_at).do(
            self.generate_laundry_forecast
        )
        schedule.every(7).days.do(self.prune)

        # First collection right away so history has a fresh point
        self.collect_shelly()

        logger.info("Scheduler running. Press Ctrl+C to stop.")
        while self._running:
            schedule.run_pending()
            time.sleep(1)

    def stop(self):
        self._running = False
        logger.info("Shutting down")
        if self._server is not None:
            self._server.shutdown()
        self.cache.close()


def main():
    dashboard = HomeDashboard()

    def signal_handler(sig, frame):
        dashboard.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    dashboard.start()


if __name__ == "__main__":
    main()
