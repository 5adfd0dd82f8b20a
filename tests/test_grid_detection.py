"""Tests for the grid status detector cascade."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from datetime import date, datetime, timezone

from grid.detection import (
    GridObservation,
    GridStatus,
    TelemetrySample,
    detect_from_grid_history,
    detect_from_grid_periods,
    resolve_grid_status,
)
from grid.periods import GridPeriod


def history(*values, start_ts=1_700_000_000, step=900):
    """Victron-style [ts, value, min, max] rows."""
    return [[start_ts + i * step, v, v, v] for i, v in enumerate(values)]


PERIODS = [
    GridPeriod(date(2023, 10, 1), date(2024, 4, 15)),
    GridPeriod(date(2024, 11, 1), date(2025, 3, 20)),
]


class TestGridPowerLayer:
    def test_thresholds(self):
        cases = [
            (51, GridStatus.GRID_CONSUMING),
            (50, GridStatus.AUTARK),
            (0, GridStatus.AUTARK),
            (-50, GridStatus.AUTARK),
            (-51, GridStatus.GRID_FEEDING),
            (3200.5, GridStatus.GRID_CONSUMING),
        ]
        for pg, expected in cases:
            assert resolve_grid_status(pg, None, []) == expected, f"Pg={pg}"

    def test_power_wins_over_history_and_periods(self):
        """A present Pg reading decides even when the other layers disagree."""
        rising = history(100.0, 101.0, 102.0)
        open_period = [GridPeriod(date(2025, 1, 1), None)]
        status = resolve_grid_status(0.0, rising, open_period, date(2025, 6, 1))
        assert status == GridStatus.AUTARK

        status = resolve_grid_status(-800.0, rising, open_period, date(2025, 6, 1))
        assert status == GridStatus.GRID_FEEDING


class TestGridHistoryLayer:
    def test_recent_increase_is_consuming(self):
        samples = history(10.0, 10.0, 10.0, 10.2)
        assert resolve_grid_status(None, samples, []) == GridStatus.GRID_CONSUMING

    def test_overall_increase_is_consuming(self):
        """Flat at the end but higher than the start of the window."""
        samples = history(10.0, 10.5, 11.0, 11.0)
        assert resolve_grid_status(None, samples, []) == GridStatus.GRID_CONSUMING

    def test_only_last_ten_samples_count(self):
        # Increase happened before the trailing window
        samples = history(1.0, *([5.0] * 10))
        obs = GridObservation(grid_power_w=None, history=samples)
        assert detect_from_grid_history(obs) is None

    def test_flat_history_falls_through_to_periods(self):
        samples = history(42.0, 42.0, 42.0, 42.0)
        status = resolve_grid_status(None, samples, PERIODS, date(2025, 6, 1))
        assert status == GridStatus.AUTARK

    def test_history_never_reports_feeding_or_autark(self):
        for values in [(5.0, 4.0, 3.0), (5.0, 5.0, 5.0), (1.0, 3.0, 2.0)]:
            obs = GridObservation(grid_power_w=None, history=history(*values))
            assert detect_from_grid_history(obs) in (None, GridStatus.GRID_CONSUMING)

    def test_too_few_samples(self):
        obs = GridObservation(grid_power_w=None, history=history(1.0, 2.0))
        assert detect_from_grid_history(obs) is None

    def test_malformed_history_gives_no_verdict(self):
        for bad in [
            None,
            [],
            "not a list",
            [[1, "x"], [2, "y"], [3, "z"]],
            [[1], [2], [3]],
            [[1, 1.0], None, [3, 2.0]],
            [[1, True], [2, True], [3, True]],
        ]:
            obs = GridObservation(grid_power_w=None, history=bad)
            assert detect_from_grid_history(obs) is None, f"history={bad!r}"

    def test_missing_value_before_window_is_ignored(self):
        # A null counter reading far back in the series must not hide the trend
        samples = [[0, None]] + [[i, float(i)] for i in range(1, 20)]
        assert resolve_grid_status(None, samples, []) == GridStatus.GRID_CONSUMING

    def test_missing_value_in_window_counts_as_zero(self):
        obs = GridObservation(grid_power_w=None, history=history(None, 3.0, 3.0))
        assert detect_from_grid_history(obs) == GridStatus.GRID_CONSUMING

        obs = GridObservation(grid_power_w=None, history=history(3.0, 3.0, None))
        assert detect_from_grid_history(obs) is None

    def test_malformed_row_before_window_is_ignored(self):
        samples = [["bad"]] + history(*[float(i) for i in range(12)])
        obs = GridObservation(grid_power_w=None, history=samples)
        assert detect_from_grid_history(obs) == GridStatus.GRID_CONSUMING

    def test_accepts_telemetry_samples(self):
        samples = [TelemetrySample(1, 1.0), TelemetrySample(2, 1.0), TelemetrySample(3, 1.5)]
        obs = GridObservation(grid_power_w=None, history=samples)
        assert detect_from_grid_history(obs) == GridStatus.GRID_CONSUMING


class TestGridPeriodsLayer:
    def status_on(self, day, periods=PERIODS):
        return resolve_grid_status(None, None, periods, day)

    def test_inside_closed_period(self):
        assert self.status_on(date(2024, 1, 10)) == GridStatus.GRID_CONSUMING

    def test_grid_on_day_is_inclusive(self):
        assert self.status_on(date(2024, 11, 1)) == GridStatus.GRID_CONSUMING

    def test_grid_off_day_is_autark(self):
        assert self.status_on(date(2025, 3, 20)) == GridStatus.AUTARK

    def test_between_periods_uses_latest_started(self):
        assert self.status_on(date(2024, 6, 1)) == GridStatus.AUTARK

    def test_before_first_period_is_unknown(self):
        assert self.status_on(date(2023, 1, 1)) == GridStatus.UNKNOWN

    def test_no_periods_is_unknown(self):
        assert self.status_on(date(2025, 1, 1), []) == GridStatus.UNKNOWN

    def test_open_period_is_consuming(self):
        periods = PERIODS + [GridPeriod(date(2025, 10, 1), None)]
        assert self.status_on(date(2026, 2, 1), periods) == GridStatus.GRID_CONSUMING
        # Before the open period starts the previous closed one applies
        assert self.status_on(date(2025, 9, 1), periods) == GridStatus.AUTARK

    def test_accepts_datetime(self):
        obs = GridObservation(
            grid_power_w=None, history=None, periods=PERIODS,
            now=datetime(2024, 2, 1, 23, 30),
        )
        assert detect_from_grid_periods(obs) == GridStatus.GRID_CONSUMING

    def test_aware_datetime_uses_local_calendar_day(self):
        # 23:30 UTC on 19 March is already 20 March (grid_off) in Zurich
        late = datetime(2025, 3, 19, 23, 30, tzinfo=timezone.utc)
        assert self.status_on(late) == GridStatus.AUTARK
        assert self.status_on(datetime(2025, 3, 19, 22, 30, tzinfo=timezone.utc)) == (
            GridStatus.GRID_CONSUMING
        )


class TestResolver:
    def test_result_is_a_string_enum(self):
        status = resolve_grid_status(120.0, None, [])
        assert status == "grid_consuming"
        assert status.value == "grid_consuming"

    def test_custom_detector_list(self):
        calls = []

        def never(obs):
            calls.append("never")
            return None

        def always_feeding(obs):
            calls.append("always")
            return GridStatus.GRID_FEEDING

        status = resolve_grid_status(
            None, None, [], detectors=[("never", never), ("always", always_feeding)]
        )
        assert status == GridStatus.GRID_FEEDING
        assert calls == ["never", "always"]

    def test_all_detectors_silent_is_unknown(self):
        status = resolve_grid_status(None, None, [], detectors=[("none", lambda obs: None)])
        assert status == GridStatus.UNKNOWN
