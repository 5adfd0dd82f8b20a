"""Manually maintained grid connection periods.

The installation is normally autonomous; the periods file records the date
ranges during which it was physically connected to the grid. The file is
edited by hand and read once at startup:

    {"periods": [{"gridOn": "2024-01-01", "gridOff": "2024-06-01"},
                 {"gridOn": "2024-11-15", "gridOff": null}]}
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import config

logger = logging.getLogger(__name__)


class GridPeriodsError(ValueError):
    """Raised when the grid periods file is malformed or inconsistent."""


@dataclass(frozen=True)
class GridPeriod:
    grid_on: date               # first connected day (inclusive)
    grid_off: date | None       # disconnection day; None = still connected

    @property
    def is_active(self) -> bool:
        return self.grid_off is None

    def to_dict(self) -> dict:
        return {
            "gridOn": self.grid_on.isoformat(),
            "gridOff": self.grid_off.isoformat() if self.grid_off else None,
        }


def local_date(value: date | datetime | None = None) -> date:
    """Calendar date at the installation (TIMEZONE), used for all period lookups.

    Aware datetimes are converted; naive datetimes and dates are taken as local.
    """
    tz = ZoneInfo(config.system.timezone)
    if value is None:
        return datetime.now(tz).date()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    return value


def is_active(period: GridPeriod) -> bool:
    return period.is_active


def period_days(period: GridPeriod, today: date | None = None) -> int:
    """Length of a period in days. Open periods count up to today."""
    end = period.grid_off or today or local_date()
    seconds = (
        datetime.combine(end, datetime.min.time())
        - datetime.combine(period.grid_on, datetime.min.time())
    ).total_seconds()
    return math.ceil(seconds / 86400)


def _parse_date(value, field: str, index: int) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise GridPeriodsError(
            f"Period {index}: {field} is not a YYYY-MM-DD date: {value!r}"
        ) from None


def parse_grid_periods(raw: dict | list) -> list[GridPeriod]:
    """Build GridPeriods from the decoded JSON document and validate them."""
    entries = raw.get("periods", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise GridPeriodsError("'periods' must be a list")

    periods = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or "gridOn" not in entry:
            raise GridPeriodsError(f"Period {i}: missing gridOn")
        grid_on = _parse_date(entry["gridOn"], "gridOn", i)
        grid_off_raw = entry.get("gridOff")
        grid_off = None if grid_off_raw is None else _parse_date(grid_off_raw, "gridOff", i)
        periods.append(GridPeriod(grid_on=grid_on, grid_off=grid_off))

    validate_grid_periods(periods)
    return periods


def validate_grid_periods(periods: list[GridPeriod]):
    """Check ordering, overlap and the single-open-period rule.

    Raises GridPeriodsError on the first violation.
    """
    for i, p in enumerate(periods):
        if p.grid_off is not None and p.grid_off < p.grid_on:
            raise GridPeriodsError(
                f"Period {i}: gridOff {p.grid_off} is before gridOn {p.grid_on}"
            )
        if i == 0:
            continue
        prev = periods[i - 1]
        if p.grid_on < prev.grid_on:
            raise GridPeriodsError(
                f"Period {i}: periods are not in chronological order"
            )
        if prev.grid_off is None:
            raise GridPeriodsError(
                f"Period {i - 1}: only the last period may be open (gridOff=null)"
            )
        if p.grid_on < prev.grid_off:
            raise GridPeriodsError(
                f"Period {i}: starts {p.grid_on} before previous period ends {prev.grid_off}"
            )


def load_grid_periods(path: str | Path) -> list[GridPeriod]:
    """Load and validate the periods file. A missing file yields no periods."""
    path = Path(path)
    if not path.exists():
        logger.warning("Grid periods file %s not found; manual override disabled", path)
        return []
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise GridPeriodsError(f"{path}: invalid JSON: {e}") from e
    periods = parse_grid_periods(raw)
    logger.info("Loaded %d grid period(s) from %s", len(periods), path)
    return periods
