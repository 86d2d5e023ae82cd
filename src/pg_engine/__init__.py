"""pg_engine coupled saddle-point/parabolic PDE solver engine package."""

from __future__ import annotations

from .architecture import Architecture, ArchitectureAdapter, architecture_of, convert
from .config import SimulationConfig, SolverConfig
from .diagnostics import cfl_number, format_duration, hrs_mins_secs, max_speed, nan_max, nan_min
from .errors import (
    BlowUpError,
    CheckpointError,
    ConfigurationError,
    FatalSimulationError,
    OptionalDependencyMissingError,
    PgEngineError,
    SolverDivergenceError,
    SolverNonconvergenceError,
    SolverNonconvergenceWarning,
)
from .integrator import IntegratorSettings, StepRecord, TimeIntegrator
from .linear_solvers import (
    EvolutionToolkit,
    InversionToolkit,
    LinearSolverToolkit,
    PreconditionerHandle,
    PreconditionerKind,
    SolverSettings,
    SolverState,
    SolverStatus,
    build_preconditioner,
)
from .matrix_cache import MatrixCache, cache_key
from .matrix_ops import (
    Operator,
    TripletBuilder,
    assemble_block_operator,
    block_diag_operator,
    build_laplacian_tridiag,
    build_mass_matrix,
    build_theta_operators,
    is_symmetric,
    permute_rows,
    permute_symmetric,
)
from .model import Model, OperatorBuilders, build_model
from .reordering import (
    BandwidthReducer,
    DofLayout,
    bandwidth,
    invert_permutation,
    validate_permutation,
)
from .state import PhysicalParameters, SimulationState
from .state_store import StateStore, load_state, save_state

__all__ = [
    "Architecture",
    "ArchitectureAdapter",
    "BandwidthReducer",
    "BlowUpError",
    "CheckpointError",
    "ConfigurationError",
    "DofLayout",
    "EvolutionToolkit",
    "FatalSimulationError",
    "IntegratorSettings",
    "InversionToolkit",
    "LinearSolverToolkit",
    "MatrixCache",
    "Model",
    "Operator",
    "OperatorBuilders",
    "OptionalDependencyMissingError",
    "PgEngineError",
    "PhysicalParameters",
    "PreconditionerHandle",
    "PreconditionerKind",
    "SimulationConfig",
    "SimulationState",
    "SolverConfig",
    "SolverDivergenceError",
    "SolverNonconvergenceError",
    "SolverNonconvergenceWarning",
    "SolverSettings",
    "SolverState",
    "SolverStatus",
    "StateStore",
    "StepRecord",
    "TimeIntegrator",
    "TripletBuilder",
    "architecture_of",
    "assemble_block_operator",
    "bandwidth",
    "block_diag_operator",
    "build_laplacian_tridiag",
    "build_mass_matrix",
    "build_model",
    "build_preconditioner",
    "build_theta_operators",
    "cache_key",
    "cfl_number",
    "convert",
    "format_duration",
    "hrs_mins_secs",
    "invert_permutation",
    "is_symmetric",
    "load_state",
    "max_speed",
    "nan_max",
    "nan_min",
    "permute_rows",
    "permute_symmetric",
    "save_state",
    "validate_permutation",
]

__version__ = "0.1.0"
