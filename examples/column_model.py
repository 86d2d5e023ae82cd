# pg_engine/examples/column_model.py
"""One-dimensional rotating, stratified column driven through build_model().

The column z in (0, 1) is discretized with linear finite elements on n interior
nodes. The inversion couples the horizontal velocities through rotation and
balances the vertical velocity against a pressure gradient forced by buoyancy:

    [[ e2 K, -f M,     0,   0 ],     [ux]   [  0  ]
     [  f M, e2 K,     0,   0 ],  @  [uy] = [  0  ]
     [    0,    0,  e2 K, G^T ],     [uz]   [ M b ]
     [    0,    0,     G,   0 ]]     [p ]   [  0  ]

and buoyancy diffuses with a Crank-Nicolson step

    (M + alpha K) b1 = (M - alpha K) b0.

Operators are cached under ``matrices/`` next to this script, checkpoints and
plots are written to ``output/column/``. An optional YAML run file may be given
as the first command-line argument (see SimulationConfig for the keys).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from scipy.sparse import bmat, csr_matrix, diags

from pg_engine import (
    ArchitectureAdapter,
    DofLayout,
    MatrixCache,
    OperatorBuilders,
    SimulationConfig,
    SimulationState,
    StateStore,
    TripletBuilder,
    build_model,
)

_HERE = Path(__file__).resolve().parent
_DEFAULTS = {
    "epsilon2": 1e-2,
    "f0": 1.0,
    "dt": 1e-3,
    "t_final": 0.2,
    "resolution": 1.0 / 65,
    "mesh_spacing": 1.0 / 65,
    "n_checkpoints": 4,
    "n_progress": 10,
    "output_dir": _HERE / "output" / "column",
    "cache_dir": _HERE / "matrices",
}


# ---------------------------------------------------------------------------
# FEM operators
# ---------------------------------------------------------------------------


def fe_matrices(n: int, dz: float) -> tuple[csr_matrix, csr_matrix]:
    """Assemble P1 stiffness and consistent mass on n interior nodes.

    Args:
        n: Number of interior nodes (homogeneous Dirichlet at both ends).
        dz: Element length.

    Returns:
        (stiffness, mass) as CSR matrices.
    """
    k_el = np.array([[1.0, -1.0], [-1.0, 1.0]]) / dz
    m_el = np.array([[2.0, 1.0], [1.0, 2.0]]) * dz / 6.0
    stiffness = TripletBuilder((n + 2, n + 2))
    mass = TripletBuilder((n + 2, n + 2))
    for e in range(n + 1):
        stiffness.add_block(k_el, [e, e + 1])
        mass.add_block(m_el, [e, e + 1])
    interior = slice(1, n + 1)
    k_full, m_full = stiffness.build(), mass.build()
    return k_full[interior, interior].tocsr(), m_full[interior, interior].tocsr()


def pressure_gradient(n: int, n_free: int, dz: float) -> csr_matrix:
    """Difference operator coupling vertical velocity and free pressure DOFs."""
    return csr_matrix(diags([-np.ones(n_free), np.ones(n_free)], [0, 1], shape=(n_free, n))) / dz


def column_builders(config: SimulationConfig, n: int, n_p: int) -> OperatorBuilders:
    """Operator builders for the column problem."""
    params = config.to_parameters()
    dz = 1.0 / (n + 1)
    stiffness, mass = fe_matrices(n, dz)
    _, pressure_mass = fe_matrices(n_p - 1, 1.0 / n_p)
    grad = pressure_gradient(n, n_p - 1, dz)
    e2, f = params.epsilon2, params.f0

    def inversion_lhs() -> csr_matrix:
        return bmat(
            [
                [e2 * stiffness, -f * mass, None, None],
                [f * mass, e2 * stiffness, None, None],
                [None, None, e2 * stiffness, grad.T],
                [None, None, grad, None],
            ],
            format="csr",
        )

    def inversion_rhs() -> csr_matrix:
        zero = csr_matrix((n, n))
        return bmat([[zero], [zero], [mass], [csr_matrix((n_p - 1, n))]], format="csr")

    def evolution_lhs() -> csr_matrix:
        return (mass + params.alpha * stiffness).tocsr()

    def evolution_rhs() -> csr_matrix:
        return (mass - params.alpha * stiffness).tocsr()

    return OperatorBuilders(
        inversion_lhs=inversion_lhs,
        inversion_rhs=inversion_rhs,
        evolution_lhs=evolution_lhs,
        block_masses=lambda: (mass, mass, mass, pressure_mass),
        evolution_rhs=evolution_rhs,
        scalar_mass=lambda: mass,
    )


# ---------------------------------------------------------------------------
# Plotting
# ---------------------------------------------------------------------------


def make_visualizer(z: np.ndarray, out_dir: Path):  # noqa: ANN201
    """Return a visualizer saving buoyancy and vertical velocity profiles.

    Args:
        z: Interior node heights.
        out_dir: Directory receiving one PNG per checkpoint.

    Returns:
        Callable accepted by TimeIntegrator.
    """

    def visualize(state: SimulationState, index: int) -> None:
        fig, (ax_b, ax_w) = plt.subplots(1, 2, figsize=(8, 5), sharey=True)
        ax_b.plot(state.b, z)
        ax_b.set_xlabel("b")
        ax_b.set_ylabel("z")
        ax_w.plot(state.uz, z)
        ax_w.set_xlabel("w")
        for ax in (ax_b, ax_w):
            ax.grid(visible=True)
        fig.suptitle(f"t = {state.time:.3f}")
        fig.tight_layout()

        out_dir.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_dir / f"profile{index:03d}.png", dpi=150)
        plt.close(fig)

    return visualize


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


def load_config(argv: list[str]) -> SimulationConfig:
    """Defaults, overridden by an optional YAML run file."""
    if len(argv) > 1:
        file_cfg = SimulationConfig.from_yaml(argv[1])
        return SimulationConfig.from_mapping(
            {**_DEFAULTS, **file_cfg.model_dump(exclude_unset=True)}
        )
    return SimulationConfig.from_mapping(_DEFAULTS)


def main() -> None:
    """Build the column model, run it and plot checkpointed profiles."""
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s: %(message)s")
    config = load_config(sys.argv)

    n = round(1.0 / config.resolution) - 1
    n_p = n // 2 + 1
    layout = DofLayout(n_ux=n, n_uy=n, n_uz=n, n_p=n_p)
    z = np.linspace(0.0, 1.0, n + 2)[1:-1]

    initial = SimulationState.from_scalar(layout, np.exp(-((z - 0.3) ** 2) / 0.005))
    store = StateStore(config.output_dir, prefix=config.checkpoint_prefix)
    model = build_model(
        column_builders(config, n, n_p),
        layout,
        config.to_parameters(),
        ArchitectureAdapter(config.to_architecture()),
        store,
        cache=MatrixCache(config.cache_dir),
        inversion_settings=config.to_inversion_settings(),
        evolution_settings=config.to_evolution_settings(),
        integrator_settings=config.to_integrator_settings(),
        inversion_preconditioner=config.inversion.preconditioner_kind(),
        evolution_preconditioner=config.evolution.preconditioner_kind() or "diagonal",
        state=initial,
        visualizer=make_visualizer(z, config.output_dir),
    )

    model.integrator.invert()
    model.integrator.checkpoint()
    model.integrator.run()


if __name__ == "__main__":
    main()
