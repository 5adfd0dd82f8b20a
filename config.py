import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_ROOT = Path(__file__).parent


def _env(key: str, default: str | None = None, required: bool = False) -> str:
    val = os.getenv(key, default)
    if required and not val:
        raise RuntimeError(f"Missing required env var: {key}")
    return val


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes")


@dataclass(frozen=True)
class VictronConfig:
    username: str = _env("VICTRON_USERNAME", "")
    password: str = _env("VICTRON_PASSWORD", "")
    installation_id: str = _env("VICTRON_INSTALLATION_ID", "")
    base_url: str = _env("VICTRON_API_BASE", "https://vrmapi.victronenergy.com/v2")
    token_ttl_s: int = _env_int("VICTRON_TOKEN_TTL_SECONDS", 3600)


@dataclass(frozen=True)
class ShellyConfig:
    cloud_host: str = _env("SHELLY_CLOUD_HOST", "")
    auth_key: str = _env("SHELLY_AUTH_KEY", "")


@dataclass(frozen=True)
class OpenWeatherConfig:
    api_key: str = _env("OPENWEATHER_API_KEY", "")
    location: str = _env("OPENWEATHER_LOCATION", "Muhen,CH")
    base_url: str = _env("OPENWEATHER_API_BASE", "https://api.openweathermap.org/data/2.5")


@dataclass(frozen=True)
class OpenAIConfig:
    api_key: str = _env("OPENAI_API_KEY", "")
    model: str = _env("OPENAI_MODEL", "gpt-4o-mini")
    temperature: float = _env_float("OPENAI_TEMPERATURE", 0.7)


@dataclass(frozen=True)
class StoveConfig:
    data_url: str = _env("STOVE_DATA_URL", "")
    oven_sensor_number: int = _env_int("STOVE_OVEN_SENSOR", 4)


@dataclass(frozen=True)
class CacheConfig:
    """TTLs for the upstream fetch cache (seconds)."""
    shelly_ttl_s: float = _env_float("SHELLY_CACHE_TTL_S", 120)
    victron_ttl_s: float = _env_float("VICTRON_CACHE_TTL_S", 60)
    victron_history_ttl_s: float = _env_float("VICTRON_HISTORY_CACHE_TTL_S", 300)
    weather_ttl_s: float = _env_float("WEATHER_CACHE_TTL_S", 600)
    stove_ttl_s: float = _env_float("STOVE_CACHE_TTL_S", 300)
    fetch_timeout_s: float = _env_float("FETCH_TIMEOUT_S", 30)
    max_workers: int = _env_int("FETCH_MAX_WORKERS", 8)  # parallel VRM history requests


@dataclass(frozen=True)
class SystemConfig:
    log_level: str = _env("LOG_LEVEL", "INFO")
    db_path: str = _env("DB_PATH", "home_dashboard.db")
    timezone: str = _env("TIMEZONE", "Europe/Zurich")
    latitude: float = _env_float("LATITUDE", 47.34)
    longitude: float = _env_float("LONGITUDE", 8.06)
    dashboard_port: int = _env_int("DASHBOARD_PORT", 8081)
    grid_periods_path: str = _env(
        "GRID_PERIODS_PATH", str(_ROOT / "grid" / "grid_periods.json")
    )
    laundry_forecast_path: str = _env(
        "LAUNDRY_FORECAST_PATH", str(_ROOT / "web" / "laundry_forecast.json")
    )
    shelly_collect_interval_h: int = _env_int("SHELLY_COLLECT_INTERVAL_HOURS", 2)
    laundry_generate_at: str = _env("LAUNDRY_GENERATE_AT", "06:00")


# Singleton instances
victron = VictronConfig()
shelly = ShellyConfig()
openweather = OpenWeatherConfig()
openai = OpenAIConfig()
stove = StoveConfig()
cache = CacheConfig()
system = SystemConfig()
