"""Unit tests for pg_engine.state."""

from __future__ import annotations

import math

import numpy as np
import pytest

from pg_engine.errors import ConfigurationError
from pg_engine.reordering import DofLayout
from pg_engine.state import PhysicalParameters, SimulationState


def test_parameters_derived_quantities() -> None:
    """alpha and n_steps follow from dt, epsilon2, mu_rho and t_final."""
    params = PhysicalParameters(epsilon2=0.04, mu_rho=2.0, dt=0.01, t_final=0.5)
    assert params.alpha == pytest.approx(0.01 / 2 * 0.04 / 2.0)
    assert params.n_steps == 50


def test_parameters_signatures() -> None:
    """Signatures name only the fields each operator depends on."""
    params = PhysicalParameters()
    assert set(params.inversion_signature()) == {"resolution", "epsilon2", "gamma", "f0", "beta"}
    assert set(params.evolution_signature()) == {"resolution", "epsilon2", "mu_rho", "dt"}
    assert params.with_updates(dt=2e-4).evolution_signature()["dt"] == 2e-4
    assert params.with_updates(dt=2e-4).inversion_signature() == params.inversion_signature()


def test_every_operator_parameter_is_keyed() -> None:
    """Each field other than t_final feeds at least one cache signature."""
    params = PhysicalParameters()
    keyed = set(params.inversion_signature()) | set(params.evolution_signature())
    fields = set(PhysicalParameters.__dataclass_fields__)
    assert fields - keyed == {"t_final"}


@pytest.mark.parametrize(
    ("name", "value"),
    [("dt", 0.0), ("epsilon2", -1.0), ("resolution", math.nan), ("f0", math.inf)],
)
def test_parameters_validation(name: str, value: float) -> None:
    """Non-positive or non-finite parameters raise ConfigurationError."""
    with pytest.raises(ConfigurationError, match=name):
        PhysicalParameters(**{name: value})


def test_parameters_allow_zero_rotation() -> None:
    """Coriolis terms may vanish."""
    params = PhysicalParameters(f0=0.0, beta=0.0)
    assert params.f0 == 0.0


def test_state_zeros_matches_layout() -> None:
    """A zero state is sized by the layout, with n_p - 1 pressure DOFs."""
    layout = DofLayout(4, 5, 6, 3)
    state = SimulationState.zeros(layout, 7)
    assert (state.ux.size, state.uy.size, state.uz.size, state.p.size) == (4, 5, 6, 2)
    assert state.n_scalar == 7
    assert state.time == 0.0
    assert state.save_index == 0
    state.check_layout(layout, 7)
    with pytest.raises(ConfigurationError, match="'b' has length 7"):
        state.check_layout(layout, 8)


def test_state_copies_inputs() -> None:
    """Fields are stored as float64 copies of the inputs."""
    b = np.arange(3)
    state = SimulationState.from_scalar(DofLayout(1, 1, 1, 2), b, time=0.25)
    b[0] = 99
    assert state.b.dtype == np.float64
    assert np.array_equal(state.b, [0.0, 1.0, 2.0])
    assert state.time == 0.25


def test_state_flow_round_trip() -> None:
    """set_flow then flow_vector reproduces the global vector exactly."""
    layout = DofLayout(2, 3, 4, 5)
    state = SimulationState.zeros(layout, 3)
    vec = np.arange(layout.n_total, dtype=np.float64)
    state.set_flow(layout, vec)
    assert np.array_equal(state.uz, [5.0, 6.0, 7.0, 8.0])
    assert np.array_equal(state.flow_vector(layout), vec)


def test_state_copy_is_deep() -> None:
    """Mutating a copy leaves the original untouched."""
    state = SimulationState.from_scalar(DofLayout(2, 2, 2, 2), np.ones(3))
    clone = state.copy()
    clone.b[:] = 5.0
    clone.save_index = 4
    assert np.array_equal(state.b, np.ones(3))
    assert state.save_index == 0


def test_state_validation_and_finiteness() -> None:
    """Non-1D fields, non-finite times and negative indices are rejected."""
    ok = {"ux": [0.0], "uy": [0.0], "uz": [0.0], "p": [0.0], "b": [1.0]}
    assert SimulationState(**ok).is_finite()
    assert not SimulationState(**{**ok, "b": [np.nan]}).is_finite()

    with pytest.raises(ConfigurationError, match="1D"):
        SimulationState(**{**ok, "ux": np.zeros((2, 2))})
    with pytest.raises(ConfigurationError, match="time"):
        SimulationState(**ok, time=math.inf)
    with pytest.raises(ConfigurationError, match="save_index"):
        SimulationState(**ok, save_index=-1)
