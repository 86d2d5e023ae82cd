"""Unit tests for pg_engine.state_store."""

from __future__ import annotations

from typing import TYPE_CHECKING

import h5py
import numpy as np
import pytest

from pg_engine.errors import CheckpointError
from pg_engine.reordering import DofLayout
from pg_engine.state import SimulationState
from pg_engine.state_store import StateStore, load_state, save_state

if TYPE_CHECKING:
    from pathlib import Path


def _random_state(rng: np.random.Generator, *, time: float = 0.0, save_index: int = 0) -> SimulationState:
    layout = DofLayout(5, 6, 7, 4)
    return SimulationState(
        ux=rng.standard_normal(layout.n_ux),
        uy=rng.standard_normal(layout.n_uy),
        uz=rng.standard_normal(layout.n_uz),
        p=rng.standard_normal(layout.n_pressure_free),
        b=rng.standard_normal(9),
        time=time,
        save_index=save_index,
    )


def test_save_load_round_trip_is_exact(tmp_path: Path, rng: np.random.Generator) -> None:
    """Every field, the time and the save index survive bit for bit."""
    state = _random_state(rng, time=0.1 + 0.2, save_index=3)
    path = save_state(state, tmp_path / "nested" / "ckpt.h5")
    assert path.is_file()
    assert not list(path.parent.glob("*.tmp"))

    loaded = load_state(path)
    for name, values in state.fields().items():
        assert np.array_equal(getattr(loaded, name), values), name
    assert loaded.time == state.time
    assert loaded.save_index == 3


def test_load_missing_or_incomplete_raises(tmp_path: Path) -> None:
    """Missing files and files without the expected datasets raise CheckpointError."""
    with pytest.raises(CheckpointError, match="Failed to read"):
        load_state(tmp_path / "nope.h5")

    bad = tmp_path / "bad.h5"
    with h5py.File(bad, "w") as f:
        f.create_dataset("ux", data=np.zeros(2))
    with pytest.raises(CheckpointError):
        load_state(bad)


def test_store_naming_and_indices(tmp_path: Path, rng: np.random.Generator) -> None:
    """Files are named {prefix}{index:03d}.h5 and scanned in index order."""
    store = StateStore(tmp_path, prefix="state")
    assert store.path_for(3).name == "state003.h5"
    assert store.path_for(1234).name == "state1234.h5"
    assert store.indices() == []
    assert store.next_index() == 0

    for idx in (2, 0, 11):
        store.save(_random_state(rng, time=float(idx), save_index=idx))
    (tmp_path / "other001.h5").touch()
    (tmp_path / "state_notes.txt").touch()

    assert store.indices() == [0, 2, 11]
    assert store.next_index() == 12
    assert store.latest().time == 11.0
    assert store.load(2).save_index == 2


def test_store_save_explicit_index(tmp_path: Path, rng: np.random.Generator) -> None:
    """An explicit index overrides the state's save index for the file name."""
    store = StateStore(tmp_path / "out", prefix="run_")
    state = _random_state(rng, save_index=1)
    path = store.save(state, index=7)
    assert path.name == "run_007.h5"
    assert load_state(path).save_index == 1


def test_store_errors(tmp_path: Path) -> None:
    """Bad prefixes, negative indices and empty stores raise."""
    with pytest.raises(ValueError, match="prefix"):
        StateStore(tmp_path, prefix="")
    with pytest.raises(ValueError, match="prefix"):
        StateStore(tmp_path, prefix="a/b")

    store = StateStore(tmp_path / "missing")
    with pytest.raises(ValueError, match=">= 0"):
        store.path_for(-1)
    with pytest.raises(CheckpointError, match="No checkpoints"):
        store.latest()
