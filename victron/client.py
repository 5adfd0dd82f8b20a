"""Victron VRM API client.

Logs in with username/password, keeps the access token in SQLite until it
expires, and retries once with a fresh token when VRM answers 401.
"""

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, TypeVar

import requests

import config
from cache.fetch_cache import FetchCache
from grid.detection import GridStatus, resolve_grid_status
from grid.periods import GridPeriod
from storage.database import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VictronError(RuntimeError):
    """VRM API request failed."""


class InvalidTokenError(VictronError):
    """VRM rejected the access token (HTTP 401)."""


@dataclass
class SolarData:
    current_power: float        # W, PV (Pdc)
    battery_charge: float       # %, (bs)
    battery_power: float        # W, positive = charging (Pb)
    grid_power: float | None    # W, positive = consuming (Pg); None if not reported
    grid_status: GridStatus
    consumption: float          # W, AC load (Pac)
    today_yield: float          # kWh
    today_consumption: float    # kWh
    timestamp: float            # unix seconds of latest Pdc sample

    def to_dict(self) -> dict:
        d = asdict(self)
        d["grid_status"] = self.grid_status.value
        return d


def latest_value(points: list | None) -> float | None:
    """Value of the newest [ts, value, ...] row, or None if there are none."""
    if not points:
        return None
    value = points[-1][1]
    return float(value) if value is not None else None


def latest_timestamp(points: list | None) -> float | None:
    if not points:
        return None
    return points[-1][0]


def process_solar_data(
    stats: dict,
    periods: list[GridPeriod] | None = None,
    now: date | datetime | None = None,
) -> SolarData:
    """Reduce a VRM stats payload to the latest values plus grid status."""
    records = stats.get("records") or {}
    logger.debug("VRM fields available: %s", sorted(records))

    grid_power = latest_value(records.get("Pg"))
    status = resolve_grid_status(
        grid_power, records.get("grid_history_from"), periods or [], now
    )

    return SolarData(
        current_power=latest_value(records.get("Pdc")) or 0.0,
        battery_charge=latest_value(records.get("bs")) or 0.0,
        battery_power=latest_value(records.get("Pb")) or 0.0,
        grid_power=grid_power,
        grid_status=status,
        consumption=latest_value(records.get("Pac")) or 0.0,
        today_yield=latest_value(records.get("total_solar_yield")) or 0.0,
        today_consumption=latest_value(records.get("total_consumption")) or 0.0,
        timestamp=latest_timestamp(records.get("Pdc"))
        or datetime.now(timezone.utc).timestamp(),
    )


class VictronClient:
    def __init__(
        self,
        db: Database,
        cache: FetchCache | None = None,
        periods: list[GridPeriod] | None = None,
        session: requests.Session | None = None,
    ):
        self.db = db
        self.cache = cache
        self.periods = periods or []
        self.session = session or requests.Session()
        self.base_url = config.victron.base_url.rstrip("/")
        self.installation_id = config.victron.installation_id
        self.username = config.victron.username
        self.password = config.victron.password
        self.token_ttl_s = config.victron.token_ttl_s
        self._token_lock = threading.Lock()

    # -- Authentication --

    def login(self) -> str:
        logger.info("Logging in to Victron VRM as %s", self.username)
        resp = self.session.post(
            f"{self.base_url}/auth/login",
            json={"username": self.username, "password": self.password},
            timeout=30,
        )
        if not resp.ok:
            raise VictronError(f"Victron login failed: {resp.status_code} - {resp.text}")
        token = resp.json().get("token")
        if not token:
            raise VictronError("Victron login response contained no token")
        return token

    def get_token(self) -> str:
        """Stored token if still valid, otherwise a fresh login."""
        try:
            row = self.db.get_token()
        except sqlite3.Error as e:
            logger.error("Could not read stored Victron token: %s", e)
            row = None

        if row:
            expires_at = datetime.fromisoformat(row["expires_at"])
            if expires_at > datetime.now(timezone.utc):
                return row["access_token"]
            logger.info("Stored Victron token expired at %s; refreshing", row["expires_at"])

        return self.refresh_token()

    def refresh_token(self) -> str:
        if not self.username or not self.password:
            raise RuntimeError("VICTRON_USERNAME and VICTRON_PASSWORD must be set")

        with self._token_lock:
            token = self.login()
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.token_ttl_s)
            try:
                self.db.save_token(token, expires_at.isoformat())
                logger.info("New Victron token stored, expires at %s", expires_at.isoformat())
            except sqlite3.Error as e:
                logger.error("Could not store Victron token: %s", e)
        return token

    def fetch_with_token_refresh(self, fn: Callable[[str], T]) -> T:
        """Call fn(token); on a rejected token, refresh once and retry."""
        token = self.get_token()
        try:
            return fn(token)
        except InvalidTokenError:
            logger.info("Victron token rejected; refreshing and retrying")
            token = self.refresh_token()
            return fn(token)

    # -- Stats --

    def fetch_stats(
        self,
        token: str,
        interval: str = "15mins",
        type_: str | None = None,
        start: int | str | None = None,
        end: int | str | None = None,
    ) -> dict:
        if not self.installation_id:
            raise RuntimeError("VICTRON_INSTALLATION_ID not configured")

        params = {"interval": interval}
        if type_:
            params["type"] = type_
        if start is not None:
            params["start"] = str(start)
        if end is not None:
            params["end"] = str(end)

        resp = self.session.get(
            f"{self.base_url}/installations/{self.installation_id}/stats",
            headers={"x-authorization": f"Bearer {token}"},
            params=params,
            timeout=30,
        )
        if resp.status_code == 401:
            raise InvalidTokenError("INVALID_TOKEN")
        if not resp.ok:
            raise VictronError(f"Victron API error: {resp.status_code} {resp.reason}")
        return resp.json()

    def get_stats(
        self,
        interval: str = "15mins",
        type_: str | None = None,
        start: int | str | None = None,
        end: int | str | None = None,
        ttl_s: float | None = None,
    ) -> dict:
        """Stats with token refresh, through the fetch cache when one is set."""
        def fetch():
            return self.fetch_with_token_refresh(
                lambda token: self.fetch_stats(token, interval, type_, start, end)
            )

        if self.cache is None:
            return fetch()
        key = f"victron:stats:{interval}:{type_}:{start}:{end}"
        ttl = config.cache.victron_ttl_s if ttl_s is None else ttl_s
        return self.cache.get_or_fetch(key, ttl, fetch)

    def get_solar_data(self, now: datetime | None = None) -> tuple[dict, SolarData]:
        """Live feed stats and their processed form."""
        stats = self.get_stats(type_="live_feed")
        return stats, process_solar_data(stats, self.periods, now)
