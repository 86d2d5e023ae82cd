# src/pg_engine/state.py
"""Physical parameters and the in-memory simulation state.

This module provides the two data objects the time loop revolves around:

- :class:`PhysicalParameters`: immutable scale ratios, Coriolis coefficients,
  diffusivity scale and time-grid settings. Together with the mesh resolution
  they fully determine which cached operators apply.
- :class:`SimulationState`: the velocity components, pressure, scalar
  (buoyancy) field, current time and save index, mutated once per committed
  timestep.

The state container does not build operators or right-hand sides; it only
holds field vectors (always host, float64) and validates their shapes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import numpy as np

from .errors import ConfigurationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .reordering import DofLayout


# Error / message constants -------------------------------------------------

_POSITIVE_PARAM_ERROR = "{name} must be a positive finite float; got {value!r}"
_FINITE_PARAM_ERROR = "{name} must be a finite float; got {value!r}"
_FIELD_1D_ERROR = "Field '{name}' must be a 1D vector; got shape {shape}"
_FIELD_LEN_ERROR = "Field '{name}' has length {got}; expected {expected}"
_TIME_ERROR = "time must be finite; got {time!r}"
_SAVE_INDEX_ERROR = "save_index must be >= 0; got {index}"

_FIELD_NAMES = ("ux", "uy", "uz", "p", "b")


# ============================================================================
# Physical parameters
# ============================================================================


@dataclass(frozen=True, slots=True)
class PhysicalParameters:
    """Immutable physical and discretization parameters of a run.

    Attributes:
        epsilon2: Ekman number squared (vertical mixing scale).
        gamma: Aspect ratio (horizontal to vertical).
        f0: Reference Coriolis parameter.
        beta: Meridional Coriolis gradient (f = f0 + beta * y).
        mu_rho: Prandtl number times Burger number.
        dt: Time step.
        t_final: Total simulated time.
        resolution: Nominal mesh resolution (part of every cache key).
    """

    epsilon2: float = 1e-2
    gamma: float = 1.0
    f0: float = 1.0
    beta: float = 0.0
    mu_rho: float = 1.0
    dt: float = 1e-4
    t_final: float = 5e-2
    resolution: float = 0.01

    def __post_init__(self) -> None:
        for name in ("epsilon2", "gamma", "mu_rho", "dt", "t_final", "resolution"):
            value = getattr(self, name)
            if not (math.isfinite(value) and value > 0.0):
                raise ConfigurationError(_POSITIVE_PARAM_ERROR.format(name=name, value=value))
        for name in ("f0", "beta"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ConfigurationError(_FINITE_PARAM_ERROR.format(name=name, value=value))

    @property
    def alpha(self) -> float:
        """Crank-Nicolson diffusion scaling ``dt/2 * epsilon2 / mu_rho``."""
        return self.dt / 2.0 * self.epsilon2 / self.mu_rho

    @property
    def n_steps(self) -> int:
        """Number of steps ``round(t_final / dt)``."""
        return round(self.t_final / self.dt)

    def inversion_signature(self) -> dict[str, float]:
        """Parameters the inversion operators depend on."""
        return {
            "resolution": self.resolution,
            "epsilon2": self.epsilon2,
            "gamma": self.gamma,
            "f0": self.f0,
            "beta": self.beta,
        }

    def evolution_signature(self) -> dict[str, float]:
        """Parameters the evolution operators depend on."""
        return {
            "resolution": self.resolution,
            "epsilon2": self.epsilon2,
            "mu_rho": self.mu_rho,
            "dt": self.dt,
        }

    def with_updates(self, **changes: Any) -> PhysicalParameters:
        """Return a validated copy with selected fields replaced."""
        return replace(self, **changes)


# ============================================================================
# Simulation state
# ============================================================================


def _as_field(name: str, value: Any, expected: int | None) -> NDArray[np.float64]:
    arr = np.array(value, dtype=np.float64, copy=True)
    if arr.ndim != 1:
        raise ConfigurationError(_FIELD_1D_ERROR.format(name=name, shape=arr.shape))
    if expected is not None and arr.size != expected:
        raise ConfigurationError(
            _FIELD_LEN_ERROR.format(name=name, got=arr.size, expected=expected)
        )
    return arr


@dataclass(slots=True)
class SimulationState:
    """Fields of the coupled problem at one point in time.

    ``p`` holds the free pressure DOFs (nominal count minus one), matching the
    global solver layout. All fields are host float64 vectors.

    Attributes:
        ux: Velocity x-component.
        uy: Velocity y-component.
        uz: Velocity z-component.
        p: Pressure (free DOFs).
        b: Scalar (buoyancy) coefficients.
        time: Current simulation time.
        save_index: Index of the next checkpoint to write.
    """

    ux: NDArray[np.float64]
    uy: NDArray[np.float64]
    uz: NDArray[np.float64]
    p: NDArray[np.float64]
    b: NDArray[np.float64]
    time: float = 0.0
    save_index: int = 0

    def __post_init__(self) -> None:
        for name in _FIELD_NAMES:
            setattr(self, name, _as_field(name, getattr(self, name), None))
        self.time = float(self.time)
        if not math.isfinite(self.time):
            raise ConfigurationError(_TIME_ERROR.format(time=self.time))
        if int(self.save_index) < 0:
            raise ConfigurationError(_SAVE_INDEX_ERROR.format(index=self.save_index))
        self.save_index = int(self.save_index)

    @classmethod
    def zeros(cls, layout: DofLayout, n_scalar: int, *, time: float = 0.0) -> SimulationState:
        """Return a zero state sized for a DOF layout and scalar space."""
        return cls(
            ux=np.zeros(layout.n_ux),
            uy=np.zeros(layout.n_uy),
            uz=np.zeros(layout.n_uz),
            p=np.zeros(layout.n_pressure_free),
            b=np.zeros(int(n_scalar)),
            time=time,
        )

    @classmethod
    def from_scalar(
        cls, layout: DofLayout, b: Any, *, time: float = 0.0
    ) -> SimulationState:
        """Return a state with zero flow and the given scalar field."""
        b_arr = _as_field("b", b, None)
        state = cls.zeros(layout, b_arr.size, time=time)
        state.b = b_arr
        return state

    @property
    def n_scalar(self) -> int:
        """Length of the scalar field."""
        return int(self.b.size)

    def check_layout(self, layout: DofLayout, n_scalar: int | None = None) -> None:
        """Validate field lengths against a DOF layout.

        Raises:
            ConfigurationError: If any field length does not match.
        """
        expected = {
            "ux": layout.n_ux,
            "uy": layout.n_uy,
            "uz": layout.n_uz,
            "p": layout.n_pressure_free,
        }
        if n_scalar is not None:
            expected["b"] = int(n_scalar)
        for name, n in expected.items():
            _as_field(name, getattr(self, name), n)

    def flow_vector(self, layout: DofLayout) -> NDArray[np.float64]:
        """Concatenate ``[ux; uy; uz; p]`` in natural DOF order."""
        return layout.concatenate(self.ux, self.uy, self.uz, self.p)

    def set_flow(self, layout: DofLayout, vector: Any) -> None:
        """Overwrite velocity and pressure from a natural-ordered global vector."""
        self.ux, self.uy, self.uz, self.p = layout.split(np.asarray(vector))

    def copy(self) -> SimulationState:
        """Return a deep copy."""
        return SimulationState(
            ux=self.ux.copy(),
            uy=self.uy.copy(),
            uz=self.uz.copy(),
            p=self.p.copy(),
            b=self.b.copy(),
            time=self.time,
            save_index=self.save_index,
        )

    def fields(self) -> dict[str, NDArray[np.float64]]:
        """Return the field vectors keyed by name."""
        return {name: getattr(self, name) for name in _FIELD_NAMES}

    def is_finite(self) -> bool:
        """True when every field entry is finite."""
        return all(bool(np.isfinite(v).all()) for v in self.fields().values())
