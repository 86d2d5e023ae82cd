"""Unit tests for pg_engine.errors."""

from __future__ import annotations

from importlib.util import find_spec
from pathlib import Path

import pytest

from pg_engine import errors


def test_check_cupy_available_matches_environment() -> None:
    """check_cupy_available should reflect whether cupy is importable."""
    status = errors.check_cupy_available()
    assert status.package == "cupy"
    assert status.is_available == (find_spec("cupy") is not None)
    if not status.is_available:
        assert status.detail == "Module spec not found"


def test_check_cupy_available_forced_present(monkeypatch: pytest.MonkeyPatch) -> None:
    """check_cupy_available should report available if find_spec returns a spec."""
    sentinel = object()
    monkeypatch.setattr(errors, "find_spec", lambda _name: sentinel)

    status = errors.check_cupy_available()
    assert status.is_available is True
    assert status.detail is None


def test_require_cupy_raises_when_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    """require_cupy raises OptionalDependencyMissingError when unavailable."""
    monkeypatch.setattr(errors, "find_spec", lambda _name: None)

    with pytest.raises(errors.OptionalDependencyMissingError) as excinfo:
        errors.require_cupy()

    msg = str(excinfo.value)
    assert "requires cupy" in msg
    assert "Import detail" in msg
    assert "pg_engine[gpu]" in msg
    assert isinstance(excinfo.value, ImportError)


def test_raise_unsupported_preconditioner_message() -> None:
    """Capability errors name the preconditioner, architecture and reason."""
    with pytest.raises(errors.ConfigurationError) as excinfo:
        errors.raise_unsupported_preconditioner("lu", "accelerator", reason="no sparse LU")

    msg = str(excinfo.value)
    assert "'lu'" in msg
    assert "'accelerator'" in msg
    assert "no sparse LU" in msg
    assert isinstance(excinfo.value, ValueError)


def test_raise_dimension_mismatch_message() -> None:
    """Dimension errors report expected and observed shapes."""
    with pytest.raises(errors.ConfigurationError, match=r"Expected \(4,\)\. Got: \(3,\)"):
        errors.raise_dimension_mismatch(name="rhs", expected=(4,), got=(3,))


def test_raise_invalid_config_lists_missing_fields() -> None:
    """Invalid configuration errors list missing keys once, sorted."""
    with pytest.raises(errors.ConfigurationError) as excinfo:
        errors.raise_invalid_config(missing=["dt", "atol", "dt"], detail="bad")

    msg = str(excinfo.value)
    assert "['atol', 'dt']" in msg
    assert "Detail: bad" in msg


def test_fatal_errors_carry_context() -> None:
    """Fatal simulation errors keep time, step and checkpoint path."""
    path = Path("state007.h5")
    exc = errors.BlowUpError("too fast", time=0.5, step=12, checkpoint=path)
    assert isinstance(exc, errors.FatalSimulationError)
    assert isinstance(exc, RuntimeError)
    assert exc.time == 0.5
    assert exc.step == 12
    assert exc.checkpoint == path

    for cls in (errors.SolverDivergenceError, errors.SolverNonconvergenceError):
        assert issubclass(cls, errors.FatalSimulationError)
    assert issubclass(errors.CheckpointError, OSError)
    assert issubclass(errors.SolverNonconvergenceWarning, RuntimeWarning)
