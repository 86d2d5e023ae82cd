# src/pg_engine/diagnostics.py
"""Small numeric and wall-clock helpers used in progress reporting."""

from __future__ import annotations

import math
from typing import Any

import numpy as np


def nan_max(values: Any) -> float:
    """Maximum ignoring NaNs (NaN if every entry is NaN or values is empty)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0 or np.isnan(arr).all():
        return math.nan
    return float(np.nanmax(arr))


def nan_min(values: Any) -> float:
    """Minimum ignoring NaNs (NaN if every entry is NaN or values is empty)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0 or np.isnan(arr).all():
        return math.nan
    return float(np.nanmin(arr))


def max_speed(ux: Any, uy: Any, uz: Any) -> float:
    """Largest absolute velocity component over all DOFs.

    The components may live on different DOF sets, so the maximum is taken per
    component rather than over a pointwise magnitude. NaN entries propagate.
    """
    arr = np.concatenate([np.abs(np.asarray(u, dtype=np.float64)).ravel() for u in (ux, uy, uz)])
    if arr.size == 0:
        return 0.0
    return float(arr.max())


def cfl_number(h_min: float, speed: float, dt: float | None = None) -> float:
    """Advective time scale ``h_min / speed`` (times ``1/dt`` if given).

    Returns inf for a fluid at rest.
    """
    if speed <= 0.0:
        return math.inf
    scale = h_min / speed
    return scale if dt is None else scale / dt


def hrs_mins_secs(seconds: float) -> tuple[int, int, int]:
    """Split a duration into whole hours, minutes and seconds."""
    total = max(0, round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return hours, minutes, secs


def format_duration(seconds: float) -> str:
    """Format a duration as ``HH:MM:SS``."""
    if not math.isfinite(seconds):
        return "--:--:--"
    h, m, s = hrs_mins_secs(seconds)
    return f"{h:02d}:{m:02d}:{s:02d}"
