# src/pg_engine/state_store.py
"""Checkpoint persistence of :class:`~pg_engine.state.SimulationState`.

Each checkpoint is one HDF5 file holding float64 datasets ``ux``, ``uy``,
``uz``, ``p`` and ``b``, the scalar dataset ``t`` and the ``save_index``
attribute. ``load_state(save_state(state, path))`` reproduces every field bit
for bit.

A :class:`StateStore` names files ``{prefix}{index:03d}.h5`` in one directory,
so checkpoints sort by save index.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import h5py
import numpy as np

from .errors import CheckpointError
from .state import SimulationState

if TYPE_CHECKING:
    from collections.abc import Iterator


logger = logging.getLogger(__name__)

_FIELDS = ("ux", "uy", "uz", "p", "b")
_SUFFIX = ".h5"

_READ_ERROR = "Failed to read checkpoint {path}: {exc}"
_WRITE_ERROR = "Failed to write checkpoint {path}: {exc}"
_INDEX_ERROR = "Checkpoint index must be >= 0; got {index}"
_PREFIX_ERROR = "Checkpoint prefix must be non-empty and contain no path separators; got {prefix!r}"
_EMPTY_STORE_ERROR = "No checkpoints found in {directory}"


def save_state(state: SimulationState, path: str | os.PathLike[str]) -> Path:
    """Write a state to an HDF5 checkpoint (atomically replacing any file).

    Args:
        state: State to persist.
        path: Target file path.

    Raises:
        CheckpointError: If the file cannot be written.

    Returns:
        The written path.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.stem}.", suffix=".tmp", dir=target.parent)
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        with h5py.File(tmp, "w") as f:
            for name, values in state.fields().items():
                f.create_dataset(name, data=np.asarray(values, dtype=np.float64))
            f.create_dataset("t", data=np.float64(state.time))
            f.attrs["save_index"] = int(state.save_index)
        os.replace(tmp, target)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise CheckpointError(_WRITE_ERROR.format(path=target, exc=exc)) from exc
    return target


def load_state(path: str | os.PathLike[str]) -> SimulationState:
    """Read a checkpoint written by :func:`save_state`.

    Raises:
        CheckpointError: If the file is missing, unreadable or incomplete.
    """
    source = Path(path)
    try:
        with h5py.File(source, "r") as f:
            fields = {name: np.asarray(f[name][()], dtype=np.float64) for name in _FIELDS}
            t = float(f["t"][()])
            save_index = int(f.attrs.get("save_index", 0))
    except (OSError, KeyError) as exc:
        raise CheckpointError(_READ_ERROR.format(path=source, exc=exc)) from exc
    return SimulationState(**fields, time=t, save_index=save_index)


class StateStore:
    """Directory of monotonically indexed checkpoints."""

    def __init__(self, directory: str | os.PathLike[str], prefix: str = "state") -> None:
        """Initialize the store.

        Args:
            directory: Output directory (created on first save).
            prefix: File name prefix.

        Raises:
            ValueError: If the prefix is empty or contains a path separator.
        """
        if not prefix or "/" in prefix or os.sep in prefix:
            raise ValueError(_PREFIX_ERROR.format(prefix=prefix))
        self.directory = Path(directory)
        self.prefix = prefix
        self._pattern = re.compile(rf"^{re.escape(prefix)}(\d+){re.escape(_SUFFIX)}$")

    def __repr__(self) -> str:
        return f"StateStore({str(self.directory)!r}, prefix={self.prefix!r})"

    def path_for(self, index: int) -> Path:
        """Path of checkpoint ``index``."""
        if int(index) < 0:
            raise ValueError(_INDEX_ERROR.format(index=index))
        return self.directory / f"{self.prefix}{int(index):03d}{_SUFFIX}"

    def save(self, state: SimulationState, index: int | None = None) -> Path:
        """Save a state under ``index`` (defaults to ``state.save_index``)."""
        idx = state.save_index if index is None else int(index)
        path = save_state(state, self.path_for(idx))
        logger.info("Saved checkpoint %s (t=%.5e)", path, state.time)
        return path

    def load(self, index: int) -> SimulationState:
        """Load checkpoint ``index``."""
        return load_state(self.path_for(index))

    def _scan(self) -> Iterator[int]:
        if not self.directory.is_dir():
            return
        for entry in self.directory.iterdir():
            match = self._pattern.match(entry.name)
            if match is not None:
                yield int(match.group(1))

    def indices(self) -> list[int]:
        """Sorted save indices present on disk."""
        return sorted(self._scan())

    def latest(self) -> SimulationState:
        """Load the checkpoint with the highest index.

        Raises:
            CheckpointError: If the store is empty.
        """
        indices = self.indices()
        if not indices:
            raise CheckpointError(_EMPTY_STORE_ERROR.format(directory=self.directory))
        return self.load(indices[-1])

    def next_index(self) -> int:
        """One past the highest index on disk (0 for an empty store)."""
        indices = self.indices()
        return indices[-1] + 1 if indices else 0
