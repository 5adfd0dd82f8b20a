"""Grid connection status detection.

Three detectors are tried in order and the first verdict wins:

1. Pg (instantaneous grid power) from the live feed
2. grid_history_from (cumulative grid import counter)
3. the manually maintained grid periods file

The cumulative import counter never decreases, so detector 2 can only ever
prove that power is being drawn. It cannot tell feed-in from autonomy and
returns no verdict in that case.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, Sequence

from grid.periods import GridPeriod, local_date

logger = logging.getLogger(__name__)

# Watts either side of zero treated as sensor noise
PG_THRESHOLD = 50

# Number of trailing history samples inspected by the trend detector
HISTORY_WINDOW = 10


class GridStatus(str, Enum):
    AUTARK = "autark"
    GRID_CONSUMING = "grid_consuming"
    GRID_FEEDING = "grid_feeding"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TelemetrySample:
    timestamp: float    # unix seconds
    value: float


@dataclass
class GridObservation:
    """Everything the detectors may look at for one resolution."""
    grid_power_w: float | None
    history: Sequence | None
    periods: list[GridPeriod] = field(default_factory=list)
    now: date = field(default_factory=local_date)


Detector = Callable[[GridObservation], GridStatus | None]


def _to_samples(raw: Sequence | None) -> list[TelemetrySample] | None:
    """Normalise Victron rows ([ts, value, ...]) or TelemetrySamples.

    Missing values (None) count as 0. Returns None when any row is unusable.
    """
    if not raw or isinstance(raw, (str, bytes)):
        return None
    samples = []
    try:
        for row in raw:
            if isinstance(row, TelemetrySample):
                samples.append(row)
                continue
            ts, value = row[0], row[1]
            if value is None:
                value = 0.0
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            samples.append(TelemetrySample(float(ts), float(value)))
    except (TypeError, IndexError, ValueError):
        return None
    return samples


def detect_from_grid_power(obs: GridObservation) -> GridStatus | None:
    pg = obs.grid_power_w
    if pg is None:
        return None

    if pg > PG_THRESHOLD:
        logger.debug("Grid power %.1fW > %dW: consuming", pg, PG_THRESHOLD)
        return GridStatus.GRID_CONSUMING
    if pg < -PG_THRESHOLD:
        logger.debug("Grid power %.1fW < -%dW: feeding", pg, PG_THRESHOLD)
        return GridStatus.GRID_FEEDING
    logger.debug("Grid power %.1fW within threshold: autark", pg)
    return GridStatus.AUTARK


def detect_from_grid_history(obs: GridObservation) -> GridStatus | None:
    raw = obs.history
    if not raw or isinstance(raw, (str, bytes)):
        return None
    try:
        rows = list(raw)
    except TypeError:
        return None
    if len(rows) < 3:
        return None
    # Rows outside the window are never inspected
    recent = _to_samples(rows[-HISTORY_WINDOW:])
    if recent is None:
        return None

    first = recent[0].value
    previous = recent[-2].value
    last = recent[-1].value

    recent_increase = last > previous
    overall_increase = last > first
    logger.debug(
        "Grid history: first=%.6f previous=%.6f last=%.6f recent=%s overall=%s",
        first, previous, last, recent_increase, overall_increase,
    )

    if recent_increase or overall_increase:
        return GridStatus.GRID_CONSUMING
    return None


def detect_from_grid_periods(obs: GridObservation) -> GridStatus:
    """Classify from the manual periods. Always returns a verdict.

    The applicable period is the most recent one that has started; with
    validated (sorted, non-overlapping) periods that is the only one that
    can contain today.
    """
    today = local_date(obs.now)

    for period in reversed(obs.periods or []):
        if today < period.grid_on:
            continue
        if period.grid_off is None:
            logger.debug("Grid period open since %s: consuming", period.grid_on)
            return GridStatus.GRID_CONSUMING
        if today >= period.grid_off:
            logger.debug("Grid disconnected since %s: autark", period.grid_off)
            return GridStatus.AUTARK
        logger.debug("Inside grid period %s..%s: consuming", period.grid_on, period.grid_off)
        return GridStatus.GRID_CONSUMING

    logger.debug("No grid period covers %s: unknown", today)
    return GridStatus.UNKNOWN


DETECTORS: list[tuple[str, Detector]] = [
    ("grid_power", detect_from_grid_power),
    ("grid_history", detect_from_grid_history),
    ("grid_periods", detect_from_grid_periods),
]


def resolve_grid_status(
    current_grid_power: float | None,
    history_samples: Sequence | None,
    periods: list[GridPeriod] | None,
    now: date | datetime | None = None,
    detectors: list[tuple[str, Detector]] | None = None,
) -> GridStatus:
    """Run the detector cascade and return the first verdict."""
    obs = GridObservation(
        grid_power_w=current_grid_power,
        history=history_samples,
        periods=list(periods or []),
        now=local_date(now),
    )
    for name, detector in detectors or DETECTORS:
        status = detector(obs)
        if status is not None:
            logger.info("Grid status %s (from %s)", status.value, name)
            return status
    return GridStatus.UNKNOWN
