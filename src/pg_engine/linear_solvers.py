# src/pg_engine/linear_solvers.py
"""Warm-started Krylov solvers for the inversion and evolution systems.

This module provides:

- Preconditioner construction with an explicit capability check
  (:func:`build_preconditioner`). Diagonal scaling runs on both architectures;
  incomplete and complete LU factorizations are host-only and requesting them
  on the accelerator raises ConfigurationError before any solve.
- :class:`SolverSettings` (tolerances, iteration cap, restart length).
- :class:`SolverState`, the persistent, warm-started solution vector plus the
  diagnostics of the last solve.
- :class:`LinearSolverToolkit` and its two specializations:

  * :class:`InversionToolkit`: restarted GMRES for the indefinite,
    non-symmetric saddle-point system. Its right-hand side is a sparse matvec
    of a precomputed operator against the scalar field.
  * :class:`EvolutionToolkit`: conjugate gradients for a symmetric positive
    definite operator; BiCGSTAB (host) or CGS (accelerator) otherwise.

State machine per toolkit:

    IDLE -> SOLVING -> CONVERGED | UNCONVERGED | DIVERGED

UNCONVERGED means the iteration cap was reached without meeting
``||r|| <= max(atol, rtol * ||rhs||)``; it is reported, warned about, and not
fatal. DIVERGED (a non-finite entry in the solution) is terminal: every later
``solve`` call raises SolverDivergenceError.

All vectors passed to :meth:`LinearSolverToolkit.solve` are in solver
(permuted) order on the toolkit's architecture. The ``invert``/``evolve``/
``diffuse`` entry points take natural-ordered input.
"""

from __future__ import annotations

import logging
import math
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, cast

import numpy as np
from scipy.sparse import csr_matrix, issparse
from scipy.sparse.linalg import LinearOperator, spilu, splu

from .architecture import Architecture, convert
from .errors import (
    ConfigurationError,
    SolverDivergenceError,
    SolverNonconvergenceWarning,
    raise_dimension_mismatch,
    raise_unsupported_preconditioner,
)
from .matrix_ops import is_symmetric, permute_rows, permute_symmetric

if TYPE_CHECKING:
    from collections.abc import Callable

    from .architecture import ArchitectureAdapter
    from .matrix_ops import Operator


logger = logging.getLogger(__name__)

_ZERO_DIAGONAL_TOL = 1e-14

_TOLERANCE_ERROR = "{name} must be a non-negative finite float; got {value!r}"
_TOLERANCE_ZERO_ERROR = "atol and rtol cannot both be zero"
_ITMAX_ERROR = "itmax must be None, 0 (no explicit cap) or a positive int; got {value!r}"
_RESTART_ERROR = "restart must be a positive int; got {value!r}"
_UNKNOWN_PRECONDITIONER_ERROR = "Unknown preconditioner: {kind!r}"
_PRECONDITIONER_MISMATCH_ERROR = (
    "Preconditioner was built for a {got}-dimensional '{arch_got}' operator; "
    "toolkit operator is {expected}-dimensional on '{arch_expected}'"
)
_FACTORIZATION_ERROR = "{kind} factorization of the operator failed: {exc}"
_DIVERGED_ERROR = (
    "{name} solver state diverged (non-finite solution) after {n_solves} solve(s); "
    "the run cannot continue"
)
_NONCONVERGED_WARNING = (
    "{name} solve reached its iteration cap ({maxiter}) with residual {residual:.3e} "
    "above tolerance {tolerance:.3e}"
)
_NO_RHS_OPERATOR_ERROR = "{name} toolkit has no precomputed right-hand-side operator"


# =============================================================================
# Preconditioners
# =============================================================================


class PreconditionerKind(str, Enum):
    """Available preconditioner families."""

    IDENTITY = "identity"
    DIAGONAL = "diagonal"
    ILU = "ilu"
    LU = "lu"

    @property
    def is_factorization(self) -> bool:
        """True for (incomplete) LU factorizations."""
        return self in {PreconditionerKind.ILU, PreconditionerKind.LU}

    @classmethod
    def parse(cls, value: str | PreconditionerKind) -> PreconditionerKind:
        """Normalize a preconditioner name.

        Raises:
            ConfigurationError: If the name is unknown.
        """
        if isinstance(value, PreconditionerKind):
            return value
        name = str(value).strip().lower()
        aliases = {"none": "identity", "jacobi": "diagonal"}
        try:
            return cls(aliases.get(name, name))
        except ValueError as exc:
            raise ConfigurationError(
                _UNKNOWN_PRECONDITIONER_ERROR.format(kind=value)
            ) from exc


@dataclass(frozen=True, slots=True)
class PreconditionerHandle:
    """Opaque preconditioner tied to one Operator.

    Attributes:
        kind: Preconditioner family.
        architecture: Architecture the preconditioner applies on.
        dimension: Dimension of the operator it was built for.
        linear_operator: Backend LinearOperator approximating ``A^{-1}``, or
            None for the identity.
    """

    kind: PreconditionerKind
    architecture: Architecture
    dimension: int
    linear_operator: Any = field(default=None, repr=False)

    def apply(self, vector: Any) -> Any:
        """Apply the approximate inverse to a vector."""
        if self.linear_operator is None:
            return vector
        return self.linear_operator.matvec(vector)


def _diagonal_preconditioner(operator: Operator, adapter: ArchitectureAdapter) -> Any:
    xp = adapter.xp
    d = operator.diagonal()
    diag_safe = xp.where(xp.abs(d) < _ZERO_DIAGONAL_TOL, 1.0, d)
    inv_diag = 1.0 / diag_safe

    def matvec(x: Any) -> Any:
        return inv_diag * x.reshape(-1)

    n = operator.dimension
    return adapter.linalg.LinearOperator((n, n), matvec=matvec, dtype=np.float64)


def _factorization_preconditioner(
    operator: Operator,
    kind: PreconditionerKind,
    *,
    drop_tol: float,
    fill_factor: float,
) -> Any:
    matrix = cast("csr_matrix", operator.matrix).tocsc()
    try:
        if kind is PreconditionerKind.LU:
            factor = splu(matrix)
        else:
            factor = spilu(matrix, drop_tol=drop_tol, fill_factor=fill_factor)
    except RuntimeError as exc:
        raise ConfigurationError(
            _FACTORIZATION_ERROR.format(kind=kind.value.upper(), exc=exc)
        ) from exc

    n = operator.dimension

    def matvec(x: Any) -> Any:
        return factor.solve(np.asarray(x, dtype=np.float64).reshape(-1))

    return LinearOperator((n, n), matvec=matvec, dtype=np.float64)


def build_preconditioner(
    operator: Operator,
    kind: str | PreconditionerKind,
    adapter: ArchitectureAdapter,
    *,
    drop_tol: float = 1e-4,
    fill_factor: float = 10.0,
) -> PreconditionerHandle:
    """Build a preconditioner for an operator.

    Args:
        operator: Operator in solver order.
        kind: Preconditioner family (member or name).
        adapter: Architecture adapter; must match the operator.
        drop_tol: ILU drop tolerance.
        fill_factor: ILU fill factor.

    Raises:
        ConfigurationError: If the combination is unsupported on the
            architecture, the adapter does not match the operator, or the
            factorization fails.

    Returns:
        PreconditionerHandle tied to ``operator``.
    """
    pkind = PreconditionerKind.parse(kind)
    adapter.require(operator.architecture, name="Operator")
    arch = adapter.architecture

    if pkind.is_factorization and not arch.supports_factorization:
        raise_unsupported_preconditioner(
            pkind.value,
            arch.value,
            reason="the accelerator sparse library provides no LU/ILU usable as a "
            "preconditioner",
        )

    if pkind is PreconditionerKind.IDENTITY:
        linear_operator = None
    elif pkind is PreconditionerKind.DIAGONAL:
        linear_operator = _diagonal_preconditioner(operator, adapter)
    else:
        linear_operator = _factorization_preconditioner(
            operator, pkind, drop_tol=drop_tol, fill_factor=fill_factor
        )

    logger.debug("Built %s preconditioner on %s (N=%d)", pkind.value, arch.value, operator.dimension)
    return PreconditionerHandle(
        kind=pkind,
        architecture=arch,
        dimension=operator.dimension,
        linear_operator=linear_operator,
    )


# =============================================================================
# Settings and state
# =============================================================================


@dataclass(frozen=True, slots=True)
class SolverSettings:
    """Krylov solver settings.

    Attributes:
        atol: Absolute residual tolerance.
        rtol: Relative residual tolerance (times ``||rhs||``).
        itmax: Iteration cap, or None for no explicit cap (bounded by twice
            the problem dimension). ``0`` is accepted and normalized to None.
        restart: GMRES restart length.
        record_history: Whether to record residual norms during a solve (see
            ``SolverState.history_unit``; CG, BiCGSTAB and CGS pay one extra
            sparse matvec per iteration for it).
    """

    atol: float = 1e-8
    rtol: float = 1e-8
    itmax: int | None = None
    restart: int = 20
    record_history: bool = True

    def __post_init__(self) -> None:
        for name in ("atol", "rtol"):
            value = getattr(self, name)
            if not (math.isfinite(value) and value >= 0.0):
                raise ConfigurationError(_TOLERANCE_ERROR.format(name=name, value=value))
        if self.atol == 0.0 and self.rtol == 0.0:
            raise ConfigurationError(_TOLERANCE_ZERO_ERROR)
        if self.itmax is not None:
            if isinstance(self.itmax, bool) or int(self.itmax) != self.itmax or self.itmax < 0:
                raise ConfigurationError(_ITMAX_ERROR.format(value=self.itmax))
            if self.itmax == 0:
                object.__setattr__(self, "itmax", None)
        if isinstance(self.restart, bool) or int(self.restart) != self.restart or self.restart < 1:
            raise ConfigurationError(_RESTART_ERROR.format(value=self.restart))

    def iteration_cap(self, dimension: int) -> int:
        """Effective iteration cap for a problem dimension."""
        cap = 2 * int(dimension) if self.itmax is None else int(self.itmax)
        return max(1, cap)

    def tolerance(self, rhs_norm: float) -> float:
        """Convergence threshold ``max(atol, rtol * rhs_norm)``."""
        return max(self.atol, self.rtol * rhs_norm)


class SolverStatus(str, Enum):
    """Lifecycle of a toolkit's solver state."""

    IDLE = "idle"
    SOLVING = "solving"
    CONVERGED = "converged"
    UNCONVERGED = "unconverged"
    DIVERGED = "diverged"


@dataclass(slots=True)
class SolverState:
    """Mutable warm-start vector and diagnostics of the last solve.

    Attributes:
        x: Solution in solver order on the toolkit's architecture.
        status: Current lifecycle status.
        converged: Whether the last solve met the tolerance.
        n_iterations: Iterations reported by the last solve.
        elapsed: Wall-clock seconds of the last solve.
        residual_history: Residual norms recorded during the last solve, in the
            unit named by ``history_unit``.
        history_unit: Quantity in ``residual_history``. ``"residual"`` is the
            true residual norm ``||rhs - A x_k||`` after every iteration (CG,
            BiCGSTAB, CGS; one extra sparse matvec per iteration).
            ``"preconditioned_relative_residual"`` is the host GMRES inner
            iteration estimate of ``||M (rhs - A x_k)|| / ||M rhs||`` at no
            extra cost. ``"restart_residual"`` is the true residual norm
            after each device GMRES restart cycle.
        residual_norm: Final true residual norm ``||rhs - A x||``.
        n_solves: Number of solves performed.
    """

    x: Any
    status: SolverStatus = SolverStatus.IDLE
    converged: bool = False
    n_iterations: int = 0
    elapsed: float = 0.0
    residual_history: list[float] = field(default_factory=list)
    history_unit: str = "residual"
    residual_norm: float = math.nan
    n_solves: int = 0

    @property
    def is_diverged(self) -> bool:
        """True once a non-finite solution has been produced."""
        return self.status is SolverStatus.DIVERGED

    @property
    def dimension(self) -> int:
        """Length of the solution vector."""
        return int(self.x.shape[0])


# =============================================================================
# Toolkits
# =============================================================================


class LinearSolverToolkit:
    """Owns an Operator, a preconditioner and a warm-started SolverState.

    Subclasses choose the Krylov method via :meth:`_method`.
    """

    name = "linear"

    def __init__(
        self,
        operator: Operator,
        adapter: ArchitectureAdapter,
        *,
        settings: SolverSettings | None = None,
        preconditioner: str | PreconditionerKind | PreconditionerHandle = (
            PreconditionerKind.DIAGONAL
        ),
    ) -> None:
        """Initialize the toolkit.

        Args:
            operator: Operator in solver order.
            adapter: Architecture adapter; must match the operator.
            settings: Solver settings (defaults if None).
            preconditioner: Preconditioner kind, or a handle built for
                ``operator``.

        Raises:
            ConfigurationError: If architectures or dimensions do not match,
                or the preconditioner is unsupported.
        """
        adapter.require(operator.architecture, name="Operator")
        adapter.bind()
        self.operator = operator
        self.adapter = adapter
        self.settings = settings or SolverSettings()

        if isinstance(preconditioner, PreconditionerHandle):
            handle = preconditioner
            if (
                handle.dimension != operator.dimension
                or handle.architecture is not operator.architecture
            ):
                raise ConfigurationError(
                    _PRECONDITIONER_MISMATCH_ERROR.format(
                        got=handle.dimension,
                        arch_got=handle.architecture.value,
                        expected=operator.dimension,
                        arch_expected=operator.architecture.value,
                    )
                )
        else:
            handle = build_preconditioner(operator, preconditioner, adapter)
        self.preconditioner = handle
        self.state = SolverState(x=adapter.zeros(operator.dimension))

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(method={self.method!r}, N={self.dimension}, "
            f"arch={self.adapter.architecture.value!r}, "
            f"preconditioner={self.preconditioner.kind.value!r}, "
            f"status={self.state.status.value!r})"
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        """Operator dimension."""
        return self.operator.dimension

    @property
    def status(self) -> SolverStatus:
        """Status of the owned solver state."""
        return self.state.status

    @property
    def method(self) -> str:
        """Name of the Krylov method in use."""
        return self._method()[0]

    @property
    def history_unit(self) -> str:
        """Quantity recorded in ``SolverState.residual_history``."""
        return "residual"

    # ------------------------------------------------------------------
    # Method dispatch
    # ------------------------------------------------------------------

    def _method(self) -> tuple[str, Callable[..., Any]]:
        raise NotImplementedError

    def _method_kwargs(self, maxiter: int) -> dict[str, Any]:
        return {"maxiter": maxiter}

    def _tolerance_kwargs(self) -> dict[str, float]:
        # The device library still names the relative tolerance ``tol``.
        if self.adapter.architecture.is_device:
            return {"tol": self.settings.rtol, "atol": self.settings.atol}
        return {"rtol": self.settings.rtol, "atol": self.settings.atol}

    def _callback(self, rhs: Any, history: list[float]) -> tuple[Callable[..., None], dict[str, Any]]:
        record = self.settings.record_history
        matrix = self.operator.matrix
        adapter = self.adapter

        def on_iterate(xk: Any) -> None:
            if record:
                history.append(adapter.norm(rhs - matrix @ xk))
            else:
                history.append(math.nan)

        return on_iterate, {}

    def _synchronize(self) -> None:
        if self.adapter.architecture.is_device:
            self.adapter.xp.cuda.Stream.null.synchronize()

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def _check_vector(self, vector: Any, *, name: str) -> Any:
        arr = self.adapter.asarray(vector)
        if arr.shape != (self.dimension,):
            raise_dimension_mismatch(name=name, expected=(self.dimension,), got=arr.shape)
        return arr

    def solve(self, rhs: Any) -> SolverState:
        """Solve ``A x = rhs`` in place, warm-started from the previous solution.

        Args:
            rhs: Right-hand side in solver order, length equal to the operator
                dimension.

        Raises:
            SolverDivergenceError: If an earlier solve diverged.
            ConfigurationError: If rhs has the wrong length.

        Returns:
            The owned SolverState (updated).
        """
        state = self.state
        if state.is_diverged:
            raise SolverDivergenceError(
                _DIVERGED_ERROR.format(name=self.name, n_solves=state.n_solves)
            )
        b = self._check_vector(rhs, name=f"{self.name} right-hand side")

        method_name, method = self._method()
        maxiter = self.settings.iteration_cap(self.dimension)
        history: list[float] = []
        callback, callback_kwargs = self._callback(b, history)

        state.status = SolverStatus.SOLVING
        self._synchronize()
        t0 = time.perf_counter()
        x_new, info = method(
            self.operator.matrix,
            b,
            x0=state.x,
            M=self.preconditioner.linear_operator,
            callback=callback,
            **self._tolerance_kwargs(),
            **self._method_kwargs(maxiter),
            **callback_kwargs,
        )
        self._synchronize()
        state.elapsed = time.perf_counter() - t0

        state.x[...] = x_new
        state.n_solves += 1
        state.n_iterations = len(history)
        state.residual_history = history if self.settings.record_history else []
        state.history_unit = self.history_unit

        if not self.adapter.isfinite_all(state.x):
            state.status = SolverStatus.DIVERGED
            state.converged = False
            state.residual_norm = math.nan
            logger.error(
                "%s solve (%s) produced a non-finite solution after %d iteration(s)",
                self.name,
                method_name,
                state.n_iterations,
            )
            return state

        b_norm = self.adapter.norm(b)
        tolerance = self.settings.tolerance(b_norm)
        state.residual_norm = self.adapter.norm(b - self.operator.matrix @ state.x)
        state.converged = int(info) == 0
        state.status = SolverStatus.CONVERGED if state.converged else SolverStatus.UNCONVERGED

        if state.converged:
            logger.debug(
                "%s solve (%s) converged: %d iteration(s), residual %.3e, %.3f s",
                self.name,
                method_name,
                state.n_iterations,
                state.residual_norm,
                state.elapsed,
            )
        else:
            warnings.warn(
                _NONCONVERGED_WARNING.format(
                    name=self.name,
                    maxiter=maxiter,
                    residual=state.residual_norm,
                    tolerance=tolerance,
                ),
                SolverNonconvergenceWarning,
                stacklevel=2,
            )
        return state

    # ------------------------------------------------------------------
    # Natural-order helpers
    # ------------------------------------------------------------------

    def solve_natural(self, rhs: Any) -> SolverState:
        """Permute a natural-ordered rhs into solver order and solve."""
        b = self._check_vector(rhs, name=f"{self.name} right-hand side")
        return self.solve(self.operator.to_solver_order(b))

    def load_solution(self, natural: Any) -> None:
        """Seed the warm start from a natural-ordered vector (e.g. on restart).

        Raises:
            SolverDivergenceError: If the state already diverged.
            ConfigurationError: If the vector has the wrong length.
        """
        if self.state.is_diverged:
            raise SolverDivergenceError(
                _DIVERGED_ERROR.format(name=self.name, n_solves=self.state.n_solves)
            )
        x = self._check_vector(natural, name=f"{self.name} initial guess")
        self.state.x[...] = self.operator.to_solver_order(x)

    def natural_solution(self) -> Any:
        """Solution in natural order on the toolkit's architecture."""
        return self.operator.from_solver_order(self.state.x)

    def solution(self) -> np.ndarray:
        """Solution in natural order as a host float64 copy."""
        return np.array(
            self.adapter.to_host(self.natural_solution()), dtype=np.float64, copy=True
        )

    def reset(self) -> None:
        """Zero the warm start and return to IDLE (not allowed after divergence)."""
        if self.state.is_diverged:
            raise SolverDivergenceError(
                _DIVERGED_ERROR.format(name=self.name, n_solves=self.state.n_solves)
            )
        self.state = SolverState(x=self.adapter.zeros(self.dimension))


def _rhs_operator_on(
    matrix: Any, perm: np.ndarray, adapter: ArchitectureAdapter, *, square: bool
) -> Any:
    host = convert(matrix, Architecture.HOST)
    if not issparse(host):
        host = csr_matrix(np.asarray(host))
    host = cast("csr_matrix", host.tocsr().astype(np.float64))
    permuted = permute_symmetric(host, perm) if square else permute_rows(host, perm)
    return adapter.on_architecture(permuted)


class InversionToolkit(LinearSolverToolkit):
    """Restarted GMRES for the saddle-point inversion system.

    The right-hand side of every step is ``B b`` for a precomputed operator
    ``B`` (rows permuted into solver order once), so a step costs one sparse
    matvec instead of a weak-form assembly.
    """

    name = "inversion"

    def __init__(
        self,
        operator: Operator,
        adapter: ArchitectureAdapter,
        *,
        rhs_operator: Any = None,
        settings: SolverSettings | None = None,
        preconditioner: str | PreconditionerKind | PreconditionerHandle = (
            PreconditionerKind.DIAGONAL
        ),
    ) -> None:
        """Initialize the inversion toolkit.

        Args:
            operator: Saddle-point operator in solver order.
            adapter: Architecture adapter.
            rhs_operator: Natural-ordered ``N x n_scalar`` sparse matrix mapping
                scalar coefficients to the right-hand side.
            settings: Solver settings.
            preconditioner: Preconditioner kind or handle.

        Raises:
            ConfigurationError: If rhs_operator has the wrong row count.
        """
        super().__init__(operator, adapter, settings=settings, preconditioner=preconditioner)
        self.rhs_operator = None
        if rhs_operator is not None:
            if int(rhs_operator.shape[0]) != operator.dimension:
                raise_dimension_mismatch(
                    name="inversion rhs_operator rows",
                    expected=operator.dimension,
                    got=rhs_operator.shape[0],
                )
            self.rhs_operator = _rhs_operator_on(
                rhs_operator, operator.perm, adapter, square=False
            )

    def _method(self) -> tuple[str, Callable[..., Any]]:
        return "gmres", self.adapter.linalg.gmres

    @property
    def history_unit(self) -> str:
        """Host GMRES reports its inner estimate; the device one, restart cycles."""
        if self.adapter.architecture.is_device:
            return "restart_residual"
        return "preconditioned_relative_residual"

    def _method_kwargs(self, maxiter: int) -> dict[str, Any]:
        restart = min(self.settings.restart, self.dimension)
        return {"restart": restart, "maxiter": max(1, math.ceil(maxiter / restart))}

    def _callback(self, rhs: Any, history: list[float]) -> tuple[Callable[..., None], dict[str, Any]]:
        if self.adapter.architecture.is_device:
            # One callback per restart cycle on the device.
            on_iterate, _ = super()._callback(rhs, history)
            return on_iterate, {"callback_type": "x"}

        def on_residual(rk: Any) -> None:
            history.append(float(rk))

        return on_residual, {"callback_type": "pr_norm"}

    @property
    def n_scalar(self) -> int | None:
        """Columns of the precomputed rhs operator, if any."""
        return None if self.rhs_operator is None else int(self.rhs_operator.shape[1])

    def rhs(self, scalar: Any) -> Any:
        """Right-hand side ``B b`` in solver order.

        Raises:
            ConfigurationError: If no rhs operator was given or b has the wrong
                length.
        """
        if self.rhs_operator is None:
            raise ConfigurationError(_NO_RHS_OPERATOR_ERROR.format(name=self.name))
        b = self.adapter.asarray(scalar)
        if b.shape != (self.rhs_operator.shape[1],):
            raise_dimension_mismatch(
                name="scalar field", expected=(self.rhs_operator.shape[1],), got=b.shape
            )
        return self.rhs_operator @ b

    def invert(self, scalar: Any) -> SolverState:
        """Solve the inversion system for a natural-ordered scalar field."""
        return self.solve(self.rhs(scalar))


class EvolutionToolkit(LinearSolverToolkit):
    """CG (symmetric) or BiCGSTAB/CGS (non-symmetric) for the evolution system."""

    name = "evolution"

    def __init__(
        self,
        operator: Operator,
        adapter: ArchitectureAdapter,
        *,
        symmetric: bool | None = None,
        rhs_operator: Any = None,
        rhs_offset: Any = None,
        settings: SolverSettings | None = None,
        preconditioner: str | PreconditionerKind | PreconditionerHandle = (
            PreconditionerKind.DIAGONAL
        ),
    ) -> None:
        """Initialize the evolution toolkit.

        Args:
            operator: Evolution operator in solver order.
            adapter: Architecture adapter.
            symmetric: Whether the operator is symmetric positive definite.
                Detected from the matrix when None.
            rhs_operator: Natural-ordered square matrix ``R`` of the diffusion
                step, rhs = ``R b + offset``.
            rhs_offset: Natural-ordered constant vector added to ``R b``.
            settings: Solver settings.
            preconditioner: Preconditioner kind or handle.

        Raises:
            ConfigurationError: If rhs_operator or rhs_offset has the wrong size.
        """
        super().__init__(operator, adapter, settings=settings, preconditioner=preconditioner)
        self.symmetric = is_symmetric(operator.matrix) if symmetric is None else bool(symmetric)

        self.rhs_operator = None
        if rhs_operator is not None:
            if tuple(rhs_operator.shape) != operator.shape:
                raise_dimension_mismatch(
                    name="evolution rhs_operator", expected=operator.shape, got=rhs_operator.shape
                )
            self.rhs_operator = _rhs_operator_on(
                rhs_operator, operator.perm, adapter, square=True
            )
        self.rhs_offset = None
        if rhs_offset is not None:
            offset = self._check_vector(rhs_offset, name="evolution rhs_offset")
            self.rhs_offset = operator.to_solver_order(offset)

    def _method(self) -> tuple[str, Callable[..., Any]]:
        linalg = self.adapter.linalg
        if self.symmetric:
            return "cg", linalg.cg
        if self.adapter.architecture.is_device:
            return "cgs", linalg.cgs
        return "bicgstab", linalg.bicgstab

    def evolve(self, rhs: Any) -> SolverState:
        """Solve with an externally assembled, natural-ordered right-hand side."""
        return self.solve_natural(rhs)

    def rhs(self, scalar: Any) -> Any:
        """Diffusion right-hand side ``R b + offset`` in solver order.

        Raises:
            ConfigurationError: If no rhs operator was given or b has the wrong
                length.
        """
        if self.rhs_operator is None:
            raise ConfigurationError(_NO_RHS_OPERATOR_ERROR.format(name=self.name))
        b = self._check_vector(scalar, name="scalar field")
        out = self.rhs_operator @ self.operator.to_solver_order(b)
        if self.rhs_offset is not None:
            out = out + self.rhs_offset
        return out

    def diffuse(self, scalar: Any) -> SolverState:
        """Advance a natural-ordered scalar field by one diffusion step."""
        return self.solve(self.rhs(scalar))
