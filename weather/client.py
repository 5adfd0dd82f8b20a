"""OpenWeather current conditions + 5-day/3-hour forecast client.

The forecast endpoint only carries sunrise/sunset for the current day, so the
per-day values are computed with astral from the reported coordinates.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import requests
from astral import LocationInfo
from astral.sun import sun

import config
from cache.fetch_cache import FetchCache

logger = logging.getLogger(__name__)

_WIND_DIRECTIONS = [
    "N", "NNO", "NO", "ONO", "O", "OSO", "SO", "SSO",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
]
_DAY_NAMES = ["Montag", "Dienstag", "Mittwoch", "Donnerstag", "Freitag", "Samstag", "Sonntag"]

HOURLY_SLOTS = 8    # 3-hour steps -> 24h
FORECAST_DAYS = 5


class WeatherError(RuntimeError):
    """OpenWeather request failed."""


def _round(x: float) -> int:
    """Round half up (OpenWeather values are displayed as whole numbers)."""
    return int(math.floor(x + 0.5))


def wind_direction(deg: float) -> str:
    return _WIND_DIRECTIONS[_round(deg / 22.5) % 16]


def kmh(speed_ms: float) -> int:
    return _round(speed_ms * 3.6)


class WeatherClient:
    def __init__(
        self,
        cache: FetchCache | None = None,
        session: requests.Session | None = None,
    ):
        self.cache = cache
        self.session = session or requests.Session()
        self.api_key = config.openweather.api_key
        self.location = config.openweather.location
        self.base_url = config.openweather.base_url.rstrip("/")
        self.tz = ZoneInfo(config.system.timezone)

    def _get(self, endpoint: str) -> requests.Response:
        params = {"q": self.location, "appid": self.api_key, "units": "metric", "lang": "de"}
        return self.session.get(f"{self.base_url}/{endpoint}", params=params, timeout=30)

    def fetch_weather(self, now: datetime | None = None) -> dict:
        """Fetch current + forecast in parallel and return the processed payload."""
        if not self.api_key:
            raise RuntimeError("OPENWEATHER_API_KEY not configured")

        logger.info("Fetching weather for %s", self.location)
        with ThreadPoolExecutor(max_workers=2) as pool:
            current_job = pool.submit(self._get, "weather")
            forecast_job = pool.submit(self._get, "forecast")
            current_resp = current_job.result()
            forecast_resp = forecast_job.result()

        if not current_resp.ok or not forecast_resp.ok:
            detail = current_resp.text if not current_resp.ok else forecast_resp.text
            logger.error(
                "OpenWeather request failed: current=%d forecast=%d",
                current_resp.status_code, forecast_resp.status_code,
            )
            raise WeatherError(f"OpenWeather API request failed: {detail}")

        return self.process(current_resp.json(), forecast_resp.json(), now)

    def get_weather(self) -> dict:
        if self.cache is None:
            return self.fetch_weather()
        return self.cache.get_or_fetch("weather", config.cache.weather_ttl_s, self.fetch_weather)

    def process(self, current: dict, forecast: dict, now: datetime | None = None) -> dict:
        now_ts = (now or datetime.now(timezone.utc)).timestamp()
        items = forecast.get("list", [])

        hourly = []
        for item in items:
            if not now_ts <= item["dt"] <= now_ts + 86400:
                continue
            hourly.append({
                "time": self._local(item["dt"]).strftime("%H:%M"),
                "timestamp": item["dt"],
                "temp": _round(item["main"]["temp"]),
                "feels_like": _round(item["main"]["feels_like"]),
                "weather": item["weather"][0]["main"],
                "weather_description": item["weather"][0]["description"],
                "icon": item["weather"][0]["icon"],
                "humidity": item["main"]["humidity"],
                "wind_speed": kmh(item["wind"]["speed"]),
                "wind_deg": item["wind"].get("deg", 0),
                "pop": _round(item.get("pop", 0) * 100),
            })
            if len(hourly) == HOURLY_SLOTS:
                break

        days: dict[str, dict] = {}
        for item in items:
            local = self._local(item["dt"])
            key = local.strftime("%d.%m")
            day = days.get(key)
            if day is None:
                days[key] = {
                    "date": key,
                    "day_name": _DAY_NAMES[local.weekday()],
                    "timestamp": item["dt"],
                    "temp_min": item["main"]["temp_min"],
                    "temp_max": item["main"]["temp_max"],
                    "weather": item["weather"][0]["main"],
                    "weather_description": item["weather"][0]["description"],
                    "icon": item["weather"][0]["icon"],
                    "humidity": item["main"]["humidity"],
                    "wind_speed": kmh(item["wind"]["speed"]),
                    "pop": _round(item.get("pop", 0) * 100),
                }
                continue
            day["temp_min"] = min(day["temp_min"], item["main"]["temp_min"])
            day["temp_max"] = max(day["temp_max"], item["main"]["temp_max"])
            # Noon slot is the most representative icon for the day
            if "12:00:00" in item.get("dt_txt", ""):
                day["weather"] = item["weather"][0]["main"]
                day["weather_description"] = item["weather"][0]["description"]
                day["icon"] = item["weather"][0]["icon"]

        coord = current.get("coord", {})
        lat = coord.get("lat", config.system.latitude)
        lon = coord.get("lon", config.system.longitude)
        daily = []
        for day in list(days.values())[:FORECAST_DAYS]:
            sunrise, sunset = self._sun_times(day["timestamp"], lat, lon)
            daily.append({
                **day,
                "temp_min": _round(day["temp_min"]),
                "temp_max": _round(day["temp_max"]),
                "sunrise": sunrise,
                "sunset": sunset,
            })

        wind = current.get("wind", {})
        main = current["main"]
        return {
            "current": {
                "temp": _round(main["temp"]),
                "feels_like": _round(main["feels_like"]),
                "weather": current["weather"][0]["main"],
                "weather_description": current["weather"][0]["description"],
                "icon": current["weather"][0]["icon"],
                "humidity": main["humidity"],
                "pressure": main.get("pressure"),
                "wind_speed": kmh(wind.get("speed", 0)),
                "wind_deg": wind.get("deg", 0),
                "wind_direction": wind_direction(wind.get("deg", 0)),
                "sunrise": current.get("sys", {}).get("sunrise"),
                "sunset": current.get("sys", {}).get("sunset"),
                "visibility": current.get("visibility"),
                "clouds": current.get("clouds", {}).get("all"),
            },
            "hourly": hourly,
            "daily": daily,
            "location": {
                "name": current.get("name"),
                "country": current.get("sys", {}).get("country"),
            },
            "timestamp": int(now_ts * 1000),
        }

    def _local(self, ts: float) -> datetime:
        return datetime.fromtimestamp(ts, tz=self.tz)

    def _sun_times(self, ts: float, lat: float, lon: float) -> tuple[int | None, int | None]:
        loc = LocationInfo(latitude=lat, longitude=lon, timezone=config.system.timezone)
        try:
            s = sun(loc.observer, date=self._local(ts).date(), tzinfo=self.tz)
        except ValueError:
            # Sun never rises or sets on this day at this latitude
            return None, None
        return int(s["sunrise"].timestamp()), int(s["sunset"].timestamp())

    def format_local_time(self, ts: float) -> str:
        return self._local(ts).strftime("%H:%M")
