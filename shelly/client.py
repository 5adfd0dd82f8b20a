import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import requests

import config
from cache.fetch_cache import FetchCache
from shelly.rooms import get_all_device_ids, get_room_by_device_id
from storage.database import Database
from weather.client import WeatherClient

logger = logging.getLogger(__name__)

# Shelly Cloud rejects larger batches
MAX_DEVICES_PER_REQUEST = 10

PERIOD_WINDOWS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


class ShellyError(RuntimeError):
    """Shelly Cloud request failed."""


@dataclass
class ShellySensor:
    id: str
    name: str | None
    online: bool
    temperature: float      # degrees C
    humidity: float         # % RH
    battery: float          # %
    battery_voltage: float  # V
    last_update: str        # "YYYY-MM-DD HH:MM:SS", UTC
    wifi_signal: float      # RSSI dBm

    def to_dict(self) -> dict:
        return asdict(self)


def parse_shelly_timestamp(value: str) -> str:
    """Shelly's "2025-12-05 07:54:00" (UTC) -> ISO "2025-12-05T07:54:00"."""
    return datetime.fromisoformat(value.replace(" ", "T")).isoformat(timespec="seconds")


def parse_device(device: dict) -> ShellySensor:
    status = device.get("status") or {}
    settings = device.get("settings") or {}
    temperature = status.get("temperature:0") or {}
    humidity = status.get("humidity:0") or {}
    battery = (status.get("devicepower:0") or {}).get("battery") or {}
    return ShellySensor(
        id=device["id"],
        name=((settings.get("sys") or {}).get("device") or {}).get("name"),
        online=device.get("online") == 1,
        temperature=temperature.get("tC", 0),
        humidity=humidity.get("rh", 0),
        battery=battery.get("percent", 0),
        battery_voltage=battery.get("V", 0),
        last_update=status.get("_updated") or "",
        wifi_signal=(status.get("wifi") or {}).get("rssi", 0),
    )


def _utc_since(window: timedelta, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return (now - window).isoformat(timespec="seconds")


class ShellyClient:
    """Shelly Cloud H&T sensors: live readings, collection and history."""

    def __init__(
        self,
        db: Database,
        cache: FetchCache | None = None,
        weather: WeatherClient | None = None,
        session: requests.Session | None = None,
    ):
        self.db = db
        self.cache = cache
        self.weather = weather
        self.session = session or requests.Session()
        self.host = config.shelly.cloud_host
        self.auth_key = config.shelly.auth_key

    def fetch_sensors(self, device_ids: list[str]) -> list[ShellySensor]:
        if not self.host or not self.auth_key:
            raise RuntimeError("Missing SHELLY_CLOUD_HOST or SHELLY_AUTH_KEY")
        if not device_ids:
            return []
        if len(device_ids) > MAX_DEVICES_PER_REQUEST:
            raise ValueError(f"Maximum {MAX_DEVICES_PER_REQUEST} devices per request allowed")

        resp = self.session.post(
            f"https://{self.host}/v2/devices/api/get",
            params={"auth_key": self.auth_key},
            json={"ids": device_ids, "select": ["status", "settings"]},
            timeout=30,
        )
        if resp.status_code == 429:
            logger.warning("Shelly Cloud rate limit hit (429)")
        if not resp.ok:
            raise ShellyError(f"Shelly API error: {resp.status_code} - {resp.text}")

        sensors = [parse_device(d) for d in resp.json()]
        logger.info("Fetched %d Shelly sensor(s)", len(sensors))
        return sensors

    # -- Dashboard view --

    def _build_room_sensors(self, device_ids: list[str]) -> list[dict]:
        flat = []
        for sensor in self.fetch_sensors(device_ids):
            room = get_room_by_device_id(sensor.id)
            flat.append({
                "name": room.name if room else (sensor.name or sensor.id),
                "temperature": sensor.temperature,
                "humidity": sensor.humidity,
                "battery": sensor.battery,
            })
        return flat

    def _weather_entry(self) -> dict | None:
        if self.weather is None:
            return None
        try:
            current = self.weather.get_weather()["current"]
        except Exception as e:
            logger.error("Weather fetch failed; sensors returned without it: %s", e)
            return None
        entry = {
            "name": "Wetter",
            "temperature": current["temp"],
            "humidity": current["humidity"],
        }
        if current.get("sunrise"):
            entry["sunrise"] = self.weather.format_local_time(current["sunrise"])
        if current.get("sunset"):
            entry["sunset"] = self.weather.format_local_time(current["sunset"])
        return entry

    def get_flat_sensors(self, device_ids: list[str] | None = None) -> list[dict]:
        """Per-room readings plus outdoor weather, cached to stay under the rate limit."""
        device_ids = device_ids or get_all_device_ids()
        if not device_ids:
            raise ValueError("No Shelly device IDs configured")
        if self.cache is None:
            rooms = self._build_room_sensors(device_ids)
        else:
            # Only room readings are cached here; weather is fetched under its own key
            key = "shelly:sensors:" + ",".join(sorted(device_ids))
            rooms = self.cache.get_or_fetch(
                key, config.cache.shelly_ttl_s, lambda: self._build_room_sensors(device_ids)
            )

        flat = list(rooms)
        weather = self._weather_entry()
        if weather is not None:
            flat.append(weather)
        return flat

    # -- Collection --

    def save_reading_if_new(self, sensor: ShellySensor) -> bool:
        if not sensor.last_update:
            return False
        saved = self.db.insert_shelly_reading({
            "device_id": sensor.id,
            "timestamp": parse_shelly_timestamp(sensor.last_update),
            "temperature": sensor.temperature,
            "humidity": sensor.humidity,
            "battery": sensor.battery,
            "wifi_signal": sensor.wifi_signal,
        })
        if saved:
            logger.debug("Saved reading for %s at %s", sensor.id, sensor.last_update)
        else:
            logger.debug("Skipped duplicate reading for %s at %s", sensor.id, sensor.last_update)
        return saved

    def save_all_readings(self, sensors: list[ShellySensor]) -> int:
        return sum(1 for s in sensors if self.save_reading_if_new(s))

    def collect(self) -> dict:
        """Fetch all configured sensors and store new readings."""
        device_ids = get_all_device_ids()
        if not device_ids:
            raise ValueError("No Shelly device IDs configured")

        sensors = []
        for i in range(0, len(device_ids), MAX_DEVICES_PER_REQUEST):
            sensors.extend(self.fetch_sensors(device_ids[i:i + MAX_DEVICES_PER_REQUEST]))
        saved = self.save_all_readings(sensors)
        logger.info("Shelly collect: %d device(s) checked, %d new reading(s)", len(sensors), saved)
        return {
            "success": True,
            "devices_checked": len(sensors),
            "readings_saved": saved,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # -- History --

    def get_historical_readings(
        self, device_id: str, period: str, now: datetime | None = None
    ) -> list[dict]:
        if period not in PERIOD_WINDOWS:
            raise ValueError("Invalid period. Use: day, week, month, or year")
        return self.db.get_shelly_readings(device_id, _utc_since(PERIOD_WINDOWS[period], now))

    def get_aggregated_readings(
        self, device_id: str, period: str, now: datetime | None = None
    ) -> list[dict]:
        """Daily (month view) or monthly (year view) averages and extremes."""
        if period not in ("month", "year"):
            raise ValueError("Aggregation period must be month or year")
        bucket_len = 10 if period == "month" else 7
        rows = self.db.get_shelly_aggregates(
            device_id, _utc_since(PERIOD_WINDOWS[period], now), bucket_len
        )
        return [
            {
                "date": r["date"],
                "avg_temp": round(r["avg_temp"], 1),
                "avg_humidity": round(r["avg_humidity"], 1),
                "min_temp": round(r["min_temp"], 1),
                "max_temp": round(r["max_temp"], 1),
            }
            for r in rows
        ]

    def get_history(self, device_id: str, period: str, now: datetime | None = None) -> dict:
        """Raw readings for day/week, aggregates for month/year."""
        if period in ("day", "week"):
            return {"readings": self.get_historical_readings(device_id, period, now),
                    "period": period, "device_id": device_id}
        if period in ("month", "year"):
            return {"readings": self.get_aggregated_readings(device_id, period, now),
                    "period": period, "device_id": device_id, "aggregated": True}
        raise ValueError("Invalid period parameter. Use: day, week, month, or year")
