# src/pg_engine/config.py
"""YAML-facing configuration models for pg_engine runs.

This module defines the pydantic configuration objects parsed from YAML run
files and translates them into the native frozen dataclasses consumed by the
solver pipeline (:class:`~pg_engine.state.PhysicalParameters`,
:class:`~pg_engine.linear_solvers.SolverSettings`,
:class:`~pg_engine.integrator.IntegratorSettings`).

Notes:
    - Unknown fields are allowed and ignored (``extra="allow"``), so driver
      scripts can keep their own keys (mesh file, plotting options) in the same
      file.
    - An iteration cap of ``0`` is accepted for compatibility with older run
      files and normalized to ``None`` ("no explicit cap").
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .architecture import Architecture
from .errors import raise_invalid_config
from .integrator import IntegratorSettings
from .linear_solvers import PreconditionerKind, SolverSettings
from .state import PhysicalParameters

if TYPE_CHECKING:
    import os

ArchitectureName = Literal["host", "cpu", "accelerator", "gpu", "device"]
PreconditionerName = Literal["identity", "none", "diagonal", "jacobi", "ilu", "lu"]


class SolverConfig(BaseModel):
    """Krylov settings of one toolkit."""

    model_config = ConfigDict(extra="allow")

    atol: float = Field(default=1e-8, ge=0.0)
    rtol: float = Field(default=1e-8, ge=0.0)
    itmax: int | None = Field(
        default=None,
        ge=0,
        description="Iteration cap; null or 0 means no explicit cap",
    )
    restart: int = Field(default=20, ge=1, description="GMRES restart length")
    record_history: bool = True
    preconditioner: PreconditionerName | None = Field(
        default=None,
        description="Preconditioner; null selects the architecture default",
    )

    @field_validator("itmax")
    @classmethod
    def _zero_means_no_cap(cls, value: int | None) -> int | None:
        return None if value == 0 else value

    def to_settings(self) -> SolverSettings:
        """Convert to native SolverSettings."""
        return SolverSettings(
            atol=self.atol,
            rtol=self.rtol,
            itmax=self.itmax,
            restart=self.restart,
            record_history=self.record_history,
        )

    def preconditioner_kind(self) -> PreconditionerKind | None:
        """Parsed preconditioner kind, or None for the default."""
        if self.preconditioner is None:
            return None
        return PreconditionerKind.parse(self.preconditioner)


class SimulationConfig(BaseModel):
    """Configuration schema of a coupled run.

    Mirrors PhysicalParameters, SolverSettings (per toolkit) and
    IntegratorSettings with YAML-friendly defaults.
    """

    model_config = ConfigDict(extra="allow")

    architecture: ArchitectureName = Field(default="host", description="Execution target")

    # Physical parameters
    epsilon2: float = Field(default=1e-2, gt=0.0, description="Ekman number squared")
    gamma: float = Field(default=1.0, gt=0.0, description="Aspect ratio")
    f0: float = Field(default=1.0, description="Reference Coriolis parameter")
    beta: float = Field(default=0.0, description="Coriolis gradient")
    mu_rho: float = Field(default=1.0, gt=0.0, description="Prandtl times Burger number")
    dt: float = Field(default=1e-4, gt=0.0)
    t_final: float = Field(default=5e-2, gt=0.0)
    resolution: float = Field(default=0.01, gt=0.0)

    # Solvers
    inversion: SolverConfig = Field(default_factory=SolverConfig)
    evolution: SolverConfig = Field(
        default_factory=lambda: SolverConfig(preconditioner="diagonal")
    )

    # Time loop
    n_steps: int | None = Field(default=None, ge=1)
    n_checkpoints: int = Field(default=50, ge=1)
    n_progress: int = Field(default=100, ge=1)
    blowup_threshold: float = Field(default=1e3, gt=0.0)
    max_unconverged_steps: int | None = Field(default=10, ge=0)
    mesh_spacing: float | None = Field(default=None, gt=0.0)

    # Paths
    output_dir: Path = Field(default=Path("out"))
    cache_dir: Path = Field(default=Path("matrices"))
    checkpoint_prefix: str = Field(default="state", min_length=1)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> SimulationConfig:
        """Validate a mapping, raising ConfigurationError on failure."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            missing = [
                ".".join(str(p) for p in err["loc"])
                for err in exc.errors()
                if err.get("type") == "missing"
            ]
            raise_invalid_config(missing=missing or None, detail=str(exc))

    @classmethod
    def from_yaml(cls, path: str | os.PathLike[str]) -> SimulationConfig:
        """Load a YAML run file.

        Raises:
            ConfigurationError: If the file does not hold a mapping or fails
                validation.
        """
        with Path(path).open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise_invalid_config(detail=f"{path} must contain a YAML mapping")
        return cls.from_mapping(data)

    def to_architecture(self) -> Architecture:
        """Selected architecture."""
        return Architecture.parse(self.architecture)

    def to_parameters(self) -> PhysicalParameters:
        """Convert to native PhysicalParameters."""
        return PhysicalParameters(
            epsilon2=self.epsilon2,
            gamma=self.gamma,
            f0=self.f0,
            beta=self.beta,
            mu_rho=self.mu_rho,
            dt=self.dt,
            t_final=self.t_final,
            resolution=self.resolution,
        )

    def to_inversion_settings(self) -> SolverSettings:
        """Inversion SolverSettings."""
        return self.inversion.to_settings()

    def to_evolution_settings(self) -> SolverSettings:
        """Evolution SolverSettings."""
        return self.evolution.to_settings()

    def to_integrator_settings(self) -> IntegratorSettings:
        """Convert to native IntegratorSettings."""
        return IntegratorSettings(
            n_steps=self.n_steps,
            n_checkpoints=self.n_checkpoints,
            n_progress=self.n_progress,
            blowup_threshold=self.blowup_threshold,
            max_unconverged_steps=self.max_unconverged_steps,
            mesh_spacing=self.mesh_spacing,
        )
