"""Historical solar statistics built from per-day / per-month VRM queries.

VRM returns cumulative counters (total_solar_yield, total_consumption,
grid_history_from, ...) as running values; a period's total is the last
sample minus the first. Periods are fetched in parallel.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timedelta

import config
from victron.client import VictronClient

logger = logging.getLogger(__name__)


def _day_bounds(day: date) -> tuple[int, int]:
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time(23, 59, 59))
    return int(start.timestamp()), int(end.timestamp())


def _month_bounds(year: int, month: int) -> tuple[int, int]:
    start = datetime(year, month, 1)
    next_month = datetime(year + (month == 12), month % 12 + 1, 1)
    end = next_month - timedelta(seconds=1)
    return int(start.timestamp()), int(end.timestamp())


def last_n_days(days: int, today: date | None = None) -> list[tuple[int, int]]:
    """(start, end) unix seconds for the last N local days, oldest first."""
    today = today or date.today()
    return [_day_bounds(today - timedelta(days=i)) for i in range(days - 1, -1, -1)]


def last_n_months(months: int, today: date | None = None) -> list[tuple[int, int]]:
    today = today or date.today()
    ranges = []
    for i in range(months - 1, -1, -1):
        idx = today.year * 12 + (today.month - 1) - i
        ranges.append(_month_bounds(idx // 12, idx % 12 + 1))
    return ranges


def current_year_months(today: date | None = None) -> list[tuple[int, int]]:
    today = today or date.today()
    return [_month_bounds(today.year, m) for m in range(1, 13)]


def counter_delta(records: dict, field: str) -> float:
    points = records.get(field)
    if not points or not isinstance(points, list):
        return 0.0
    return (points[-1][1] or 0.0) - (points[0][1] or 0.0)


def _fan_out(fn, ranges: list[tuple[int, int]]) -> list:
    with ThreadPoolExecutor(max_workers=config.cache.max_workers) as pool:
        return list(pool.map(fn, ranges))


def fetch_last_7_days(client: VictronClient, today: date | None = None) -> list[dict]:
    def fetch_day(bounds: tuple[int, int]) -> dict:
        start, end = bounds
        logger.debug("Fetching day starting %s", datetime.fromtimestamp(start).isoformat())
        stats = client.get_stats("15mins", "live_feed", start, end,
                                 ttl_s=config.cache.victron_history_ttl_s)
        records = stats.get("records") or {}

        pdc = [p[1] for p in records.get("Pdc") or [] if p[1] is not None]
        return {
            "timestamp": start * 1000,
            "total_solar_yield": counter_delta(records, "total_solar_yield"),
            "total_consumption": counter_delta(records, "total_consumption"),
            "average_power": sum(pdc) / len(pdc) if pdc else 0.0,
            "peak_power": max(pdc) if pdc else 0.0,
            "total_energy_imported": counter_delta(records, "total_energy_imported"),
            "total_energy_exported": counter_delta(records, "total_energy_exported"),
        }

    return _fan_out(fetch_day, last_n_days(7, today))


def _fetch_month(client: VictronClient, bounds: tuple[int, int]) -> dict:
    start, end = bounds
    stats = client.get_stats("days", "live_feed", start, end,
                             ttl_s=config.cache.victron_history_ttl_s)
    records = stats.get("records") or {}
    return {
        "timestamp": start,
        "total_solar_yield": counter_delta(records, "total_solar_yield"),
        "total_consumption": counter_delta(records, "total_consumption"),
        "grid_history_from": counter_delta(records, "grid_history_from"),
    }


def fetch_last_24_months(client: VictronClient, today: date | None = None) -> list[dict]:
    return _fan_out(lambda b: _fetch_month(client, b), last_n_months(24, today))


def autarky_percent(consumption: float, grid_from: float) -> float:
    """Share of consumption not drawn from the grid, in percent."""
    if consumption <= 0:
        return 0.0
    return round((consumption - grid_from) / consumption * 100, 2)


def fetch_autarky_stats(client: VictronClient, today: date | None = None) -> dict:
    """Self-sufficiency over the current calendar year."""
    months = _fan_out(lambda b: _fetch_month(client, b), current_year_months(today))

    total_yield = sum(m["total_solar_yield"] for m in months)
    total_consumption = sum(m["total_consumption"] for m in months)
    grid_from = sum(m["grid_history_from"] for m in months)
    autarky = autarky_percent(total_consumption, grid_from)
    logger.info(
        "Autarky %.2f%% (consumption=%.1f kWh, grid=%.1f kWh, yield=%.1f kWh)",
        autarky, total_consumption, grid_from, total_yield,
    )
    return {
        "total_solar_yield": total_yield,
        "total_consumption": total_consumption,
        "grid_history_from": grid_from,
        "autarky": autarky,
    }


def peak_entry(points: list | None) -> tuple[float, float] | None:
    """(timestamp, value) of the highest sample, or None."""
    if not points:
        return None
    best = max(points, key=lambda p: p[1] if p[1] is not None else float("-inf"))
    return best[0], best[1]


def fetch_last_30_days_peak_power(client: VictronClient, today: date | None = None) -> list[dict]:
    def fetch_day(bounds: tuple[int, int]) -> dict:
        start, end = bounds
        stats = client.get_stats("15mins", "live_feed", start, end,
                                 ttl_s=config.cache.victron_history_ttl_s)
        peak = peak_entry((stats.get("records") or {}).get("Pdc"))
        if peak is None:
            return {"timestamp": start * 1000, "peak_power": 0}
        return {"timestamp": peak[0] * 1000, "peak_power": peak[1]}

    return _fan_out(fetch_day, last_n_days(30, today))


def fetch_today_peak_power(client: VictronClient, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    start = int(datetime.combine(now.date(), time.min).timestamp())
    end = int(now.timestamp())
    # Not cached: the end bound moves with every call.
    stats = client.fetch_with_token_refresh(
        lambda token: client.fetch_stats(token, "15mins", None, start, end)
    )
    peak = peak_entry((stats.get("records") or {}).get("Pdc"))
    if peak is None:
        logger.info("No Pdc data for today")
        return {"timestamp": start, "peak_power": 0}
    logger.info("Peak power today: %.0fW at %s", peak[1],
                datetime.fromtimestamp(peak[0]).isoformat())
    return {"timestamp": peak[0], "peak_power": peak[1]}
