"""Unit tests for pg_engine.config."""

from __future__ import annotations

from pathlib import Path

import pytest

from pg_engine.architecture import Architecture
from pg_engine.config import SimulationConfig, SolverConfig
from pg_engine.errors import ConfigurationError
from pg_engine.linear_solvers import PreconditionerKind

RUN_FILE = """\
architecture: cpu
epsilon2: 0.0004
mu_rho: 2.0
dt: 0.002
t_final: 0.1
resolution: 0.05
inversion:
  rtol: 1.0e-10
  itmax: 0
  restart: 40
  preconditioner: lu
evolution:
  preconditioner: jacobi
n_checkpoints: 10
output_dir: results
mesh_file: meshes/column.msh
"""


def test_defaults_translate_to_native_objects() -> None:
    """An empty mapping gives the documented defaults."""
    cfg = SimulationConfig.from_mapping({})
    assert cfg.to_architecture() is Architecture.HOST
    params = cfg.to_parameters()
    assert params.dt == 1e-4
    assert params.n_steps == 500
    assert cfg.to_inversion_settings().itmax is None
    assert cfg.inversion.preconditioner_kind() is None
    assert cfg.evolution.preconditioner_kind() is PreconditionerKind.DIAGONAL
    assert cfg.to_integrator_settings().n_checkpoints == 50
    assert cfg.output_dir == Path("out")


def test_from_yaml(tmp_path: Path) -> None:
    """YAML run files are parsed, validated and converted."""
    path = tmp_path / "run.yaml"
    path.write_text(RUN_FILE, encoding="utf-8")

    cfg = SimulationConfig.from_yaml(path)
    assert cfg.to_architecture() is Architecture.HOST
    params = cfg.to_parameters()
    assert params.alpha == pytest.approx(0.002 / 2 * 0.0004 / 2.0)
    assert params.n_steps == 50

    inv = cfg.to_inversion_settings()
    assert inv.itmax is None
    assert inv.rtol == 1e-10
    assert inv.restart == 40
    assert cfg.inversion.preconditioner_kind() is PreconditionerKind.LU
    assert cfg.evolution.preconditioner_kind() is PreconditionerKind.DIAGONAL

    assert cfg.to_integrator_settings().n_checkpoints == 10
    assert cfg.output_dir == Path("results")
    assert cfg.model_extra == {"mesh_file": "meshes/column.msh"}


def test_empty_yaml_is_defaults(tmp_path: Path) -> None:
    """An empty file is an empty mapping."""
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert SimulationConfig.from_yaml(path).dt == 1e-4


def test_non_mapping_yaml_rejected(tmp_path: Path) -> None:
    """A YAML list is not a run file."""
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="YAML mapping"):
        SimulationConfig.from_yaml(path)


@pytest.mark.parametrize(
    "data",
    [
        {"dt": -1.0},
        {"architecture": "tpu"},
        {"inversion": {"preconditioner": "amg"}},
        {"inversion": {"itmax": -2}},
        {"n_checkpoints": 0},
    ],
)
def test_invalid_values_raise_configuration_error(data: dict[str, object]) -> None:
    """Validation failures surface as ConfigurationError."""
    with pytest.raises(ConfigurationError, match="Invalid pg_engine configuration"):
        SimulationConfig.from_mapping(data)


def test_solver_config_round_trip() -> None:
    """SolverConfig maps one-to-one onto SolverSettings."""
    cfg = SolverConfig(atol=1e-6, rtol=1e-4, itmax=25, restart=5, record_history=False)
    settings = cfg.to_settings()
    assert (settings.atol, settings.rtol, settings.itmax, settings.restart) == (1e-6, 1e-4, 25, 5)
    assert settings.record_history is False
