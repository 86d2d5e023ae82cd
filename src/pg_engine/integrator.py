# src/pg_engine/integrator.py
"""Semi-implicit time loop coupling the evolution and inversion solves.

Each step runs, strictly in order:

1. Evolution right-hand side: either assembled externally from the current
   state (``rhs_assembler``) or built from the precomputed diffusion operator.
2. Evolution solve (warm-started), giving the candidate scalar field.
3. Inversion right-hand side as one sparse matvec of the precomputed operator
   against the candidate scalar field.
4. Inversion solve (warm-started), giving candidate velocity and pressure.
5. Divergence and blow-up checks on the candidates.
6. Commit: the candidates replace the fields of the SimulationState and time
   advances by ``dt``.

A step that fails a check never mutates the SimulationState. Instead the last
committed state is written as an emergency checkpoint and a
:class:`~pg_engine.errors.FatalSimulationError` subclass is raised carrying the
time, step and checkpoint path.

:meth:`TimeIntegrator.run` checkpoints every ``max(1, n_steps // K)`` steps,
hands each checkpointed state to the optional visualizer, and logs progress
with an ETA extrapolated from the wall time of the steps completed so far.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NoReturn

import numpy as np

from .diagnostics import cfl_number, format_duration, max_speed, nan_max, nan_min
from .errors import (
    BlowUpError,
    CheckpointError,
    ConfigurationError,
    FatalSimulationError,
    SolverDivergenceError,
    SolverNonconvergenceError,
    raise_dimension_mismatch,
)
from .linear_solvers import SolverStatus
from .state import SimulationState
from .state_store import load_state

if TYPE_CHECKING:
    import os
    from collections.abc import Callable
    from pathlib import Path

    from .linear_solvers import EvolutionToolkit, InversionToolkit
    from .reordering import DofLayout
    from .state import PhysicalParameters
    from .state_store import StateStore

    RhsAssembler = Callable[[SimulationState], Any]
    Visualizer = Callable[[SimulationState, int], None]


logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_N_STEPS_ERROR = "n_steps must be None or a positive int; got {value!r}"
_N_CHECKPOINTS_ERROR = "n_checkpoints must be a positive int; got {value!r}"
_N_PROGRESS_ERROR = "n_progress must be a positive int; got {value!r}"
_BLOWUP_ERROR = "blowup_threshold must be a positive float; got {value!r}"
_MAX_UNCONVERGED_ERROR = "max_unconverged_steps must be None or >= 0; got {value!r}"
_MESH_SPACING_ERROR = "mesh_spacing must be None or a positive float; got {value!r}"
_SCALAR_SIZE_ERROR = (
    "Scalar field has {got} DOFs but the evolution operator is {expected}-dimensional"
)
_DIVERGED_MSG = "Solution diverged: {solver} solve produced non-finite values at step {step}"
_BLOCKED_MSG = "{solver} solver already diverged; the simulation state is frozen"
_BLOWUP_MSG = "Blow-up at step {step}: max |u| = {speed:.3e} exceeds {threshold:.3e}"
_UNCONVERGED_MSG = (
    "{count} consecutive step(s) with unconverged solves (allowed: {allowed}) at step {step}"
)


# =============================================================================
# Settings and records
# =============================================================================


@dataclass(frozen=True, slots=True)
class IntegratorSettings:
    """Time-loop settings.

    Attributes:
        n_steps: Steps per run, or None to run until ``parameters.t_final``.
        n_checkpoints: Number K of checkpoints per run.
        n_progress: Number of progress log lines per run.
        blowup_threshold: Largest admissible velocity magnitude.
        max_unconverged_steps: Consecutive steps with an unconverged solve
            tolerated before aborting; None never aborts.
        mesh_spacing: Smallest mesh spacing for the CFL estimate (optional).
    """

    n_steps: int | None = None
    n_checkpoints: int = 50
    n_progress: int = 100
    blowup_threshold: float = 1e3
    max_unconverged_steps: int | None = 10
    mesh_spacing: float | None = None

    def __post_init__(self) -> None:
        if self.n_steps is not None and (isinstance(self.n_steps, bool) or self.n_steps < 1):
            raise ConfigurationError(_N_STEPS_ERROR.format(value=self.n_steps))
        if self.n_checkpoints < 1:
            raise ConfigurationError(_N_CHECKPOINTS_ERROR.format(value=self.n_checkpoints))
        if self.n_progress < 1:
            raise ConfigurationError(_N_PROGRESS_ERROR.format(value=self.n_progress))
        if not (math.isfinite(self.blowup_threshold) and self.blowup_threshold > 0.0):
            raise ConfigurationError(_BLOWUP_ERROR.format(value=self.blowup_threshold))
        if self.max_unconverged_steps is not None and self.max_unconverged_steps < 0:
            raise ConfigurationError(
                _MAX_UNCONVERGED_ERROR.format(value=self.max_unconverged_steps)
            )
        if self.mesh_spacing is not None and not self.mesh_spacing > 0.0:
            raise ConfigurationError(_MESH_SPACING_ERROR.format(value=self.mesh_spacing))


@dataclass(frozen=True, slots=True)
class StepRecord:
    """Diagnostics of one committed step."""

    step: int
    time: float
    evolution_iterations: int
    inversion_iterations: int
    solve_time: float
    max_speed: float


# =============================================================================
# Integrator
# =============================================================================


class TimeIntegrator:
    """Drive the coupled evolution/inversion time loop."""

    def __init__(
        self,
        evolution: EvolutionToolkit,
        inversion: InversionToolkit,
        layout: DofLayout,
        store: StateStore,
        parameters: PhysicalParameters,
        settings: IntegratorSettings | None = None,
        *,
        state: SimulationState | None = None,
        rhs_assembler: RhsAssembler | None = None,
        visualizer: Visualizer | None = None,
    ) -> None:
        """Initialize the integrator.

        Args:
            evolution: Evolution toolkit (owns the scalar-field solve).
            inversion: Inversion toolkit (owns the velocity/pressure solve).
            layout: Global DOF layout of the inversion system.
            store: Checkpoint store.
            parameters: Physical parameters (``dt``, ``t_final``).
            settings: Time-loop settings.
            state: Initial state; zeros if None.
            rhs_assembler: Callable returning the natural-ordered evolution
                right-hand side for the current state. When None the
                precomputed diffusion operator of ``evolution`` is used.
            visualizer: Callable receiving each checkpointed state and its
                save index.

        Raises:
            ConfigurationError: If the layout, toolkits and state disagree.
        """
        if inversion.dimension != layout.n_total:
            raise_dimension_mismatch(
                name="inversion operator", expected=layout.n_total, got=inversion.dimension
            )
        if inversion.n_scalar is not None and inversion.n_scalar != evolution.dimension:
            raise_dimension_mismatch(
                name="inversion rhs_operator columns",
                expected=evolution.dimension,
                got=inversion.n_scalar,
            )

        self.evolution = evolution
        self.inversion = inversion
        self.layout = layout
        self.store = store
        self.parameters = parameters
        self.settings = settings or IntegratorSettings()
        self.rhs_assembler = rhs_assembler
        self.visualizer = visualizer

        if state is None:
            state = SimulationState.zeros(layout, evolution.dimension)
        self._check_state(state)
        self.state = state
        self.step_index = round(state.time / parameters.dt)
        self.history: list[StepRecord] = []
        self._unconverged_streak = 0

    def __repr__(self) -> str:
        return (
            f"TimeIntegrator(t={self.state.time:.5e}, step={self.step_index}, "
            f"N={self.layout.n_total}, n_scalar={self.evolution.dimension})"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_state(self, state: SimulationState) -> None:
        state.check_layout(self.layout)
        if state.n_scalar != self.evolution.dimension:
            raise ConfigurationError(
                _SCALAR_SIZE_ERROR.format(got=state.n_scalar, expected=self.evolution.dimension)
            )

    @property
    def n_steps(self) -> int:
        """Steps performed by :meth:`run` when no count is given.

        Without an explicit ``settings.n_steps`` this is the number of steps
        left until ``t_final`` from the current state time.
        """
        if self.settings.n_steps is not None:
            return self.settings.n_steps
        remaining = (self.parameters.t_final - self.state.time) / self.parameters.dt
        return max(0, round(remaining))

    def checkpoint_interval(self, n_steps: int | None = None) -> int:
        """Steps between checkpoints, ``max(1, n_steps // K)``."""
        n = self.n_steps if n_steps is None else int(n_steps)
        return max(1, n // self.settings.n_checkpoints)

    def _ensure_not_diverged(self) -> None:
        for toolkit in (self.evolution, self.inversion):
            if toolkit.status is SolverStatus.DIVERGED:
                raise SolverDivergenceError(
                    _BLOCKED_MSG.format(solver=toolkit.name),
                    time=self.state.time,
                    step=self.step_index,
                )

    def _abort(self, error_cls: type[FatalSimulationError], message: str) -> NoReturn:
        """Write an emergency checkpoint of the committed state, then raise."""
        logger.error("%s", message)
        path: Path | None
        try:
            path = self.store.save(self.state, self.state.save_index)
        except CheckpointError:
            logger.exception("Emergency checkpoint failed")
            path = None
        else:
            logger.error("Emergency checkpoint written to %s", path)
        raise error_cls(message, time=self.state.time, step=self.step_index + 1, checkpoint=path)

    def _check_diverged(self, toolkit: EvolutionToolkit | InversionToolkit) -> None:
        if toolkit.status is SolverStatus.DIVERGED:
            self._abort(
                SolverDivergenceError,
                _DIVERGED_MSG.format(solver=toolkit.name, step=self.step_index + 1),
            )

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def invert(self) -> SimulationState:
        """Solve the inversion for the current scalar field without advancing time.

        Raises:
            SolverDivergenceError: If the inversion produces non-finite values.

        Returns:
            The updated state.
        """
        self._ensure_not_diverged()
        self.inversion.invert(self.state.b)
        self._check_diverged(self.inversion)
        self.state.set_flow(self.layout, self.inversion.solution())
        return self.state

    def step(self) -> StepRecord:
        """Advance the state by one time step.

        Raises:
            SolverDivergenceError: On a non-finite solution (or if a solver
                diverged earlier).
            BlowUpError: If the velocity magnitude exceeds the threshold.
            SolverNonconvergenceError: If unconverged steps repeat beyond
                ``max_unconverged_steps``.

        Returns:
            Diagnostics of the committed step.
        """
        self._ensure_not_diverged()
        step = self.step_index + 1

        if self.rhs_assembler is not None:
            evo = self.evolution.evolve(self.rhs_assembler(self.state))
        else:
            evo = self.evolution.diffuse(self.state.b)
        self._check_diverged(self.evolution)
        evo_iterations, evo_time = evo.n_iterations, evo.elapsed

        scalar = self.evolution.natural_solution()
        inv = self.inversion.invert(scalar)
        self._check_diverged(self.inversion)

        b_new = np.array(self.evolution.adapter.to_host(scalar), dtype=np.float64)
        ux, uy, uz, p = self.layout.split(self.inversion.solution())

        speed = max_speed(ux, uy, uz)
        threshold = self.settings.blowup_threshold
        if not speed <= threshold:
            self._abort(
                BlowUpError,
                _BLOWUP_MSG.format(step=step, speed=speed, threshold=threshold),
            )

        if self.evolution.status is SolverStatus.CONVERGED and inv.status is SolverStatus.CONVERGED:
            self._unconverged_streak = 0
        else:
            self._unconverged_streak += 1
            allowed = self.settings.max_unconverged_steps
            if allowed is not None and self._unconverged_streak > allowed:
                self._abort(
                    SolverNonconvergenceError,
                    _UNCONVERGED_MSG.format(
                        count=self._unconverged_streak, allowed=allowed, step=step
                    ),
                )

        state = self.state
        state.b = b_new
        state.ux, state.uy, state.uz, state.p = ux, uy, uz, p
        state.time += self.parameters.dt
        self.step_index = step

        record = StepRecord(
            step=step,
            time=state.time,
            evolution_iterations=evo_iterations,
            inversion_iterations=inv.n_iterations,
            solve_time=evo_time + inv.elapsed,
            max_speed=speed,
        )
        self.history.append(record)
        return record

    # ------------------------------------------------------------------
    # Checkpoints and progress
    # ------------------------------------------------------------------

    def checkpoint(self) -> Path:
        """Save the current state at its save index, then call the visualizer."""
        index = self.state.save_index
        path = self.store.save(self.state, index)
        self.state.save_index = index + 1
        if self.visualizer is not None:
            self.visualizer(self.state, index)
        return path

    def log_progress(self, i: int, n: int, elapsed: float) -> None:
        """Log time, step, wall time, ETA, max |u|, scalar range and CFL."""
        state = self.state
        eta = elapsed / i * (n - i) if i > 0 else math.inf
        speed = max_speed(state.ux, state.uy, state.uz)
        line = (
            "t = %.3e (i = %d/%d) | elapsed %s | ETA %s | |u|max = %.2e | "
            "b in [%.2e, %.2e]"
        )
        args: list[Any] = [
            state.time,
            i,
            n,
            format_duration(elapsed),
            format_duration(eta),
            speed,
            nan_min(state.b),
            nan_max(state.b),
        ]
        if self.settings.mesh_spacing is not None:
            line += " | CFL dt = %.2e"
            args.append(cfl_number(self.settings.mesh_spacing, speed))
        logger.info(line, *args)

    def run(self, n_steps: int | None = None) -> SimulationState:
        """Advance ``n_steps`` steps with periodic checkpoints and progress logs.

        Args:
            n_steps: Number of steps (defaults to :attr:`n_steps`).

        Raises:
            ConfigurationError: If an explicit ``n_steps`` is below one.

        Returns:
            The final state.
        """
        if n_steps is None and self.n_steps == 0:
            logger.info("t = %.5e already reached t_final; nothing to run", self.state.time)
            return self.state
        n = self.n_steps if n_steps is None else int(n_steps)
        if n < 1:
            raise ConfigurationError(_N_STEPS_ERROR.format(value=n_steps))
        save_every = self.checkpoint_interval(n)
        log_every = max(1, n // self.settings.n_progress)

        logger.info(
            "Running %d step(s) of dt = %.3e from t = %.3e (checkpoint every %d)",
            n,
            self.parameters.dt,
            self.state.time,
            save_every,
        )
        t0 = time.perf_counter()
        for i in range(1, n + 1):
            self.step()
            if i % save_every == 0:
                self.checkpoint()
            if i % log_every == 0 or i == n:
                self.log_progress(i, n, time.perf_counter() - t0)
        return self.state

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    def restart_from(self, path: str | os.PathLike[str]) -> SimulationState:
        """Load a checkpoint and seed both solvers' warm starts from it.

        Raises:
            CheckpointError: If the checkpoint cannot be read.
            ConfigurationError: If its fields do not match the layout.

        Returns:
            The restored state.
        """
        state = load_state(path)
        self._check_state(state)
        self.evolution.load_solution(state.b)
        self.inversion.load_solution(state.flow_vector(self.layout))
        state.save_index += 1
        self.state = state
        self.step_index = round(state.time / self.parameters.dt)
        self._unconverged_streak = 0
        logger.info("Restarted from %s at t = %.5e (step %d)", path, state.time, self.step_index)
        return state
