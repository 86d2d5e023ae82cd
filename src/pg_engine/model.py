# src/pg_engine/model.py
"""Pipeline assembly: cache -> reordering -> operators -> toolkits -> integrator.

The FEM-assembly collaborator is represented by :class:`OperatorBuilders`, a
bundle of zero-argument callables. :func:`build_model` consults the matrix
cache for every operator, computes the block permutations, places the
permuted operators on the selected architecture, and wires the two Krylov
toolkits into a :class:`~pg_engine.integrator.TimeIntegrator`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from .integrator import TimeIntegrator
from .linear_solvers import EvolutionToolkit, InversionToolkit, PreconditionerKind
from .matrix_ops import Operator
from .reordering import BandwidthReducer, bandwidth, identity_permutation

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .architecture import ArchitectureAdapter
    from .integrator import IntegratorSettings, RhsAssembler, Visualizer
    from .linear_solvers import SolverSettings
    from .matrix_cache import MatrixCache
    from .reordering import DofLayout
    from .state import PhysicalParameters, SimulationState
    from .state_store import StateStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OperatorBuilders:
    """Zero-argument callables standing in for the FEM-assembly collaborator.

    All matrices are returned in natural DOF order.

    Attributes:
        inversion_lhs: ``N x N`` saddle-point matrix, ``N = n_velocity + n_p - 1``.
        inversion_rhs: ``N x n_scalar`` matrix mapping scalar coefficients to
            the inversion right-hand side.
        evolution_lhs: ``n_scalar x n_scalar`` evolution matrix.
        block_masses: Mass-type matrices of the (ux, uy, uz, p) blocks used
            for the inversion ordering (pressure on the constrained space).
        evolution_rhs: Optional diffusion right-hand-side matrix ``R``.
        evolution_offset: Optional constant right-hand-side vector.
        scalar_mass: Optional mass-type matrix for the evolution ordering
            (the evolution matrix itself is used when None).
    """

    inversion_lhs: Callable[[], Any]
    inversion_rhs: Callable[[], Any]
    evolution_lhs: Callable[[], Any]
    block_masses: Callable[[], Sequence[Any]]
    evolution_rhs: Callable[[], Any] | None = None
    evolution_offset: Callable[[], Any] | None = None
    scalar_mass: Callable[[], Any] | None = None


@dataclass(slots=True)
class Model:
    """Assembled pipeline."""

    adapter: ArchitectureAdapter
    layout: DofLayout
    parameters: PhysicalParameters
    inversion: InversionToolkit
    evolution: EvolutionToolkit
    integrator: TimeIntegrator


def _cached(
    cache: MatrixCache | None,
    kind: str,
    signature: dict[str, Any],
    builder: Callable[[], Any],
) -> Any:
    if cache is None:
        return builder()
    return cache.get_or_build_for(kind, signature, builder)


def build_model(
    builders: OperatorBuilders,
    layout: DofLayout,
    parameters: PhysicalParameters,
    adapter: ArchitectureAdapter,
    store: StateStore,
    *,
    cache: MatrixCache | None = None,
    inversion_settings: SolverSettings | None = None,
    evolution_settings: SolverSettings | None = None,
    integrator_settings: IntegratorSettings | None = None,
    inversion_preconditioner: str | PreconditionerKind | None = None,
    evolution_preconditioner: str | PreconditionerKind = PreconditionerKind.DIAGONAL,
    symmetric_evolution: bool | None = None,
    reorder: bool = True,
    state: SimulationState | None = None,
    rhs_assembler: RhsAssembler | None = None,
    visualizer: Visualizer | None = None,
) -> Model:
    """Assemble the full solver pipeline.

    Args:
        builders: Operator builders (FEM-assembly collaborator).
        layout: Global DOF layout of the inversion system.
        parameters: Physical parameters.
        adapter: Architecture adapter; bound by this call.
        store: Checkpoint store.
        cache: Optional matrix cache; builders are called directly when None.
        inversion_settings: Inversion solver settings.
        evolution_settings: Evolution solver settings.
        integrator_settings: Time-loop settings.
        inversion_preconditioner: Inversion preconditioner; defaults to LU
            where factorizations are supported and diagonal scaling otherwise.
        evolution_preconditioner: Evolution preconditioner.
        symmetric_evolution: Whether the evolution matrix is SPD (detected
            when None).
        reorder: Whether to apply bandwidth-reducing permutations.
        state: Initial state (zeros if None).
        rhs_assembler: Optional per-step evolution rhs assembler.
        visualizer: Optional checkpoint visualizer.

    Returns:
        The assembled Model.
    """
    scalar_mass = None if builders.scalar_mass is None else builders.scalar_mass()
    n_scalar: int | None = None
    if state is not None:
        n_scalar = state.n_scalar
    elif scalar_mass is not None:
        n_scalar = int(scalar_mass.shape[0])

    size_signature: dict[str, Any] = {"block_sizes": list(layout.block_sizes)}
    if n_scalar is not None:
        size_signature["n_scalar"] = n_scalar
    inv_signature = {**parameters.inversion_signature(), **size_signature}

    a_inv = _cached(cache, "inversion_lhs", inv_signature, builders.inversion_lhs)
    b_inv = _cached(cache, "inversion_rhs", inv_signature, builders.inversion_rhs)
    # The scalar DOF count keys the evolution operators of different meshes apart.
    evo_signature = {
        **parameters.evolution_signature(),
        "n_scalar": int(b_inv.shape[1]) if n_scalar is None else n_scalar,
    }
    a_evo = _cached(cache, "evolution_lhs", evo_signature, builders.evolution_lhs)
    r_evo = (
        None
        if builders.evolution_rhs is None
        else _cached(cache, "evolution_rhs", evo_signature, builders.evolution_rhs)
    )
    offset = None if builders.evolution_offset is None else np.asarray(builders.evolution_offset())

    reducer = BandwidthReducer(adapter)
    if reorder:
        perm_inv, _ = reducer.layout_permutation(layout, builders.block_masses())
        perm_evo, _ = reducer.compute_permutation([a_evo if scalar_mass is None else scalar_mass])
    else:
        perm_inv = identity_permutation(layout.n_total)
        perm_evo = identity_permutation(a_evo.shape[0])

    inversion_op = Operator.from_matrix(a_inv, adapter, perm_inv)
    evolution_op = Operator.from_matrix(a_evo, adapter, perm_evo)
    logger.info(
        "Inversion operator: N=%d, nnz=%d, bandwidth %d -> %d",
        inversion_op.dimension,
        inversion_op.nnz,
        bandwidth(a_inv),
        bandwidth(inversion_op.matrix),
    )
    logger.info(
        "Evolution operator: N=%d, nnz=%d, bandwidth %d -> %d",
        evolution_op.dimension,
        evolution_op.nnz,
        bandwidth(a_evo),
        bandwidth(evolution_op.matrix),
    )

    if inversion_preconditioner is None:
        inversion_preconditioner = (
            PreconditionerKind.LU
            if adapter.architecture.supports_factorization
            else PreconditionerKind.DIAGONAL
        )
    inversion = InversionToolkit(
        inversion_op,
        adapter,
        rhs_operator=b_inv,
        settings=inversion_settings,
        preconditioner=inversion_preconditioner,
    )
    evolution = EvolutionToolkit(
        evolution_op,
        adapter,
        symmetric=symmetric_evolution,
        rhs_operator=r_evo,
        rhs_offset=offset,
        settings=evolution_settings,
        preconditioner=evolution_preconditioner,
    )
    integrator = TimeIntegrator(
        evolution,
        inversion,
        layout,
        store,
        parameters,
        integrator_settings,
        state=state,
        rhs_assembler=rhs_assembler,
        visualizer=visualizer,
    )
    logger.info(
        "Model ready on %s: inversion %s/%s, evolution %s/%s",
        adapter.architecture.value,
        inversion.method,
        inversion.preconditioner.kind.value,
        evolution.method,
        evolution.preconditioner.kind.value,
    )
    return Model(
        adapter=adapter,
        layout=layout,
        parameters=parameters,
        inversion=inversion,
        evolution=evolution,
        integrator=integrator,
    )
