# src/pg_engine/errors.py
"""Error types and dependency-guard utilities for pg_engine.

This module centralizes:
- the error taxonomy of the solver pipeline (configuration problems, fatal
  numerical failures, checkpoint I/O failures),
- the non-fatal non-convergence warning, and
- small helpers to guard the optional CuPy accelerator backend.

Fatal numerical errors (divergence, blow-up) carry the time and step at which
they were detected plus the checkpoint path written before the abort, so the
driver can report where to restart from.
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib.util import find_spec
from typing import TYPE_CHECKING, Final, NoReturn

if TYPE_CHECKING:
    from pathlib import Path

_CUPY_EXTRA_INSTALL_MSG: Final[str] = (
    "Install the optional dependency group with:\n"
    "  pip install 'pg_engine[gpu]'\n"
    "or, if you are using uv:\n"
    "  uv pip install '.[gpu]'"
)


class PgEngineError(Exception):
    """Base exception for pg_engine errors."""


class OptionalDependencyMissingError(PgEngineError, ImportError):
    """Raised when an optional dependency is required but missing."""


class ConfigurationError(PgEngineError, ValueError):
    """Raised when a component is configured inconsistently.

    Covers unsupported architecture/preconditioner combinations, mismatched
    operator/vector dimensions, and attempts to re-target a bound architecture.
    Always raised before any solve is attempted.
    """


class CheckpointError(PgEngineError, OSError):
    """Raised when a checkpoint or cached operator cannot be read or written."""


class FatalSimulationError(PgEngineError, RuntimeError):
    """Base class for conditions that terminate a run.

    Attributes:
        time: Simulation time of the last committed state.
        step: Step index at which the condition was detected.
        checkpoint: Path of the emergency checkpoint, if one was written.
    """

    def __init__(
        self,
        message: str,
        *,
        time: float | None = None,
        step: int | None = None,
        checkpoint: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.time = time
        self.step = step
        self.checkpoint = checkpoint


class SolverDivergenceError(FatalSimulationError):
    """Raised when a solution vector contains non-finite values."""


class BlowUpError(FatalSimulationError):
    """Raised when the velocity magnitude exceeds the blow-up threshold."""


class SolverNonconvergenceError(FatalSimulationError):
    """Raised when non-convergence repeats beyond the configured allowance."""


class SolverNonconvergenceWarning(RuntimeWarning):
    """Emitted when a Krylov solve reaches its iteration cap."""


@dataclass(frozen=True, slots=True)
class DependencyStatus:
    """Structured description of optional dependency availability."""

    package: str
    is_available: bool
    detail: str | None = None


def check_cupy_available() -> DependencyStatus:
    """Check whether cupy is importable.

    Returns:
        DependencyStatus describing cupy availability.
    """
    spec = find_spec("cupy")
    if spec is None:
        return DependencyStatus(
            package="cupy",
            is_available=False,
            detail="Module spec not found",
        )
    return DependencyStatus(package="cupy", is_available=True, detail=None)


def require_cupy() -> None:
    """Require that cupy is importable.

    Raises:
        OptionalDependencyMissingError: If cupy cannot be imported.
    """
    status = check_cupy_available()
    if status.is_available:
        return

    msg = (
        "The accelerator architecture requires cupy, but it is not "
        "available in this environment.\n\n"
        f"Import detail: {status.detail}\n\n"
        f"{_CUPY_EXTRA_INSTALL_MSG}"
    )
    raise OptionalDependencyMissingError(msg)


def raise_unsupported_preconditioner(
    preconditioner: str, architecture: str, *, reason: str
) -> NoReturn:
    """Raise a standardized ConfigurationError for preconditioner capability issues.

    Args:
        preconditioner: Requested preconditioner kind (for example, "lu").
        architecture: Architecture the operator lives on.
        reason: Human-readable reason the combination cannot run.

    Raises:
        ConfigurationError: Always.
    """
    msg = (
        f"Preconditioner '{preconditioner}' is not supported on the "
        f"'{architecture}' architecture.\n"
        f"Reason: {reason}\n\n"
        "Use 'diagonal' or 'identity' preconditioning on the accelerator."
    )
    raise ConfigurationError(msg)


def raise_dimension_mismatch(*, name: str, expected: object, got: object) -> NoReturn:
    """Raise a standardized ConfigurationError for a shape/length mismatch.

    Args:
        name: Name of the object with the shape issue.
        expected: Expected shape or length.
        got: Actual observed shape or length.

    Raises:
        ConfigurationError: Always.
    """
    msg = f"{name} has an invalid shape/length. Expected {expected!r}. Got: {got!r}."
    raise ConfigurationError(msg)


def raise_invalid_config(
    *,
    missing: list[str] | None = None,
    detail: str | None = None,
) -> NoReturn:
    """Raise a standardized ConfigurationError for an invalid settings object.

    Args:
        missing: Required config keys that are missing.
        detail: Optional additional context.

    Raises:
        ConfigurationError: Always.
    """
    parts: list[str] = ["Invalid pg_engine configuration."]
    if missing:
        parts.append(f"Missing required field(s): {sorted(set(missing))}.")
    if detail:
        parts.append(f"Detail: {detail}")
    raise ConfigurationError(" ".join(parts))
