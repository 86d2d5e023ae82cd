"""Global pytest configuration and shared fixtures for pg_engine."""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np
import pytest
from scipy.sparse import bmat, csr_matrix, diags, identity

from pg_engine.architecture import ArchitectureAdapter
from pg_engine.matrix_ops import build_laplacian_tridiag, build_mass_matrix, build_theta_operators
from pg_engine.reordering import DofLayout
from pg_engine.state import PhysicalParameters

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

# -----------------------------------------------------------------------------
# Optional dependency detection
# -----------------------------------------------------------------------------

HAS_CUPY: Final[bool] = importlib.util.find_spec("cupy") is not None


# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "accelerator: mark test as requiring the cupy accelerator backend",
    )


# -----------------------------------------------------------------------------
# Conditional skipping fixture
# -----------------------------------------------------------------------------


@pytest.fixture(scope="session")
def require_cupy() -> None:
    """
    Skip tests if the gpu extra is not installed.

    Usage:
        def test_x(require_cupy):
            ...
    """
    if not HAS_CUPY:
        pytest.skip("gpu extra (cupy) not installed")


# -----------------------------------------------------------------------------
# Toy coupled problem
# -----------------------------------------------------------------------------
#
# Inversion: velocity components on n interior nodes, pressure on n_p nodes
# (n_p - 1 free after the zero-mean constraint). With L = -Laplacian (SPD) and
# G a full-row-rank difference matrix, the system
#
#     [[ L, -fI,  0,  0 ],
#      [ fI,  L,  0,  0 ],
#      [  0,  0,  L, G^T],
#      [  0,  0,  G,  0 ]]
#
# is non-symmetric, indefinite and nonsingular. The scalar field forces the
# vertical velocity rows.
#
# Evolution: Crank-Nicolson diffusion (I + alpha K) b1 = (I - alpha K) b0 on the
# same n interior nodes with homogeneous Dirichlet boundaries.


@dataclass(frozen=True)
class ToyProblem:
    """Natural-ordered toy operators."""

    layout: DofLayout
    parameters: PhysicalParameters
    dx: float
    x: NDArray[np.float64]
    inversion_lhs: csr_matrix
    inversion_rhs: csr_matrix
    evolution_lhs: csr_matrix
    evolution_rhs: csr_matrix
    block_masses: tuple[csr_matrix, ...]

    @property
    def n_scalar(self) -> int:
        return int(self.x.size)

    def sine_profile(self) -> NDArray[np.float64]:
        return np.sin(np.pi * self.x)


def pressure_gradient(n: int, n_free: int) -> csr_matrix:
    """Full-row-rank forward difference (n_free x n)."""
    main = -np.ones(n_free)
    upper = np.ones(n_free)
    return csr_matrix(diags([main, upper], [0, 1], shape=(n_free, n)))


def make_toy_problem(n: int = 8, n_p: int = 5, *, dt: float = 1e-3) -> ToyProblem:
    """Build the toy inversion/evolution operators."""
    layout = DofLayout(n_ux=n, n_uy=n, n_uz=n, n_p=n_p)
    parameters = PhysicalParameters(
        epsilon2=1.0, mu_rho=1.0, f0=1.0, dt=dt, t_final=10 * dt, resolution=1.0 / (n + 1)
    )
    dx = 1.0 / (n + 1)
    x = dx * np.arange(1, n + 1)

    stiffness = -build_laplacian_tridiag(n, dx, bc="dirichlet")
    eye = identity(n, format="csr")
    f = parameters.f0
    grad = pressure_gradient(n, layout.n_pressure_free)
    inversion_lhs = bmat(
        [
            [stiffness, -f * eye, None, None],
            [f * eye, stiffness, None, None],
            [None, None, stiffness, grad.T],
            [None, None, grad, None],
        ],
        format="csr",
    )
    inversion_rhs = bmat(
        [
            [csr_matrix((n, n))],
            [csr_matrix((n, n))],
            [eye],
            [csr_matrix((layout.n_pressure_free, n))],
        ],
        format="csr",
    )
    evolution_lhs, evolution_rhs = build_theta_operators(
        identity(n, format="csr"), stiffness, parameters.alpha
    )
    mass = build_mass_matrix(n, dx)
    block_masses = (mass, mass, mass, build_mass_matrix(layout.n_pressure_free, dx))
    return ToyProblem(
        layout=layout,
        parameters=parameters,
        dx=dx,
        x=x,
        inversion_lhs=inversion_lhs,
        inversion_rhs=inversion_rhs,
        evolution_lhs=evolution_lhs,
        evolution_rhs=evolution_rhs,
        block_masses=block_masses,
    )


@pytest.fixture
def toy() -> ToyProblem:
    """Small coupled toy problem (N = 3*8 + 5 - 1 = 28, 8 scalar DOFs)."""
    return make_toy_problem()


@pytest.fixture
def host_adapter() -> ArchitectureAdapter:
    """Fresh, unbound host adapter."""
    return ArchitectureAdapter("host")


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator."""
    return np.random.default_rng(20240917)


@pytest.fixture
def toy_factory() -> Callable[..., ToyProblem]:
    """Factory building toy problems of other sizes or time steps."""
    return make_toy_problem
