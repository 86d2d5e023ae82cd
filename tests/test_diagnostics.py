"""Unit tests for pg_engine.diagnostics."""

from __future__ import annotations

import math

import numpy as np
import pytest

from pg_engine.diagnostics import (
    cfl_number,
    format_duration,
    hrs_mins_secs,
    max_speed,
    nan_max,
    nan_min,
)


def test_nan_max_min_ignore_nans() -> None:
    """NaNs are skipped; all-NaN and empty inputs give NaN."""
    values = [1.0, np.nan, -3.0, 2.5]
    assert nan_max(values) == 2.5
    assert nan_min(values) == -3.0
    assert math.isnan(nan_max([np.nan, np.nan]))
    assert math.isnan(nan_min([]))


def test_max_speed_over_components() -> None:
    """The maximum absolute component is taken across all velocity blocks."""
    assert max_speed([0.1, -0.4], [0.2], [0.0, 0.3, -0.05]) == pytest.approx(0.4)
    assert max_speed([], [], []) == 0.0
    assert math.isnan(max_speed([0.1, np.nan], [0.0], [0.0]))


def test_cfl_number() -> None:
    """h/speed, optionally per time step; infinite at rest."""
    assert cfl_number(0.1, 2.0) == pytest.approx(0.05)
    assert cfl_number(0.1, 2.0, dt=0.01) == pytest.approx(5.0)
    assert cfl_number(0.1, 0.0) == math.inf


def test_durations() -> None:
    """Durations split and format as HH:MM:SS."""
    assert hrs_mins_secs(3725.4) == (1, 2, 5)
    assert hrs_mins_secs(-3.0) == (0, 0, 0)
    assert format_duration(59.6) == "00:01:00"
    assert format_duration(90061) == "25:01:01"
    assert format_duration(math.inf) == "--:--:--"
