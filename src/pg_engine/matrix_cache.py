# src/pg_engine/matrix_cache.py
"""Persistent cache of assembled operator matrices.

Assembling the inversion and evolution operators through the FEM collaborator
is by far the most expensive setup step, so assembled matrices are stored on
disk and reused across runs.

Design notes:
    * Keys are content hashes. The signature (a flat mapping of parameter
      names to numbers or strings) is serialized to canonical JSON with every
      float written via :meth:`float.hex`, hashed with SHA-256, and combined
      with the operator kind: ``"{kind}_{digest[:20]}"``. Equal signatures give
      equal keys on every platform; any differing field gives a different key.
    * Payload is one HDF5 file per key holding COO triples (``rows``,
      ``cols``, ``vals``) plus ``shape``/``key``/``kind`` attributes.
      Values are stored as float64, so a load reproduces the saved matrix
      bit for bit.
    * Writes go to a temporary file in the cache directory and are moved into
      place with :func:`os.replace`. Concurrent processes sharing one cache
      directory may still build the same operator twice; there is no
      cross-process deduplication.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import h5py
import numpy as np
from scipy.sparse import coo_matrix, csr_matrix, issparse

from .architecture import Architecture, convert
from .errors import CheckpointError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping


logger = logging.getLogger(__name__)

_KEY_DIGEST_LENGTH = 20
_SUFFIX = ".h5"

_SIGNATURE_VALUE_ERROR = "Unsupported signature value for {name!r}: {value!r}"
_KIND_ERROR = "Operator kind must be a non-empty identifier; got {kind!r}"
_READ_ERROR = "Failed to read cached operator {path}: {exc}"
_WRITE_ERROR = "Failed to write cached operator {path}: {exc}"
_MISSING_ERROR = "No cached operator for key {key!r} in {directory}"
_KEY_MISMATCH_ERROR = "Cached file {path} holds key {found!r}, expected {key!r}"
_BUILDER_RESULT_ERROR = "Builder for {key!r} returned {typ}; expected a sparse matrix"


# =============================================================================
# Cache keys
# =============================================================================


def _canonical_value(name: str, value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | np.integer):
        return int(value)
    if isinstance(value, float | np.floating):
        return float(value).hex()
    if isinstance(value, str):
        return value
    if isinstance(value, tuple | list):
        return [_canonical_value(name, v) for v in value]
    raise TypeError(_SIGNATURE_VALUE_ERROR.format(name=name, value=value))


def cache_key(kind: str, signature: Mapping[str, Any]) -> str:
    """Return the deterministic cache key of an operator.

    Args:
        kind: Operator kind, e.g. ``"inversion_lhs"``.
        signature: Parameters (including mesh resolution) the operator depends
            on. Values may be bools, ints, floats, strings or sequences thereof.

    Raises:
        ValueError: If kind is empty or not an identifier.
        TypeError: If a signature value has an unsupported type.

    Returns:
        Key string ``"{kind}_{sha256 prefix}"``.
    """
    if not kind or not kind.isidentifier():
        raise ValueError(_KIND_ERROR.format(kind=kind))
    canonical = {str(k): _canonical_value(str(k), v) for k, v in signature.items()}
    payload = json.dumps(
        {"kind": kind, "signature": canonical},
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{kind}_{digest[:_KEY_DIGEST_LENGTH]}"


# =============================================================================
# HDF5 payload
# =============================================================================


def write_sparse(path: Path, matrix: Any, *, key: str = "", kind: str = "") -> None:
    """Atomically write a sparse matrix as COO triples to an HDF5 file.

    Raises:
        CheckpointError: If the file cannot be written.
    """
    host = cast("csr_matrix", convert(matrix, Architecture.HOST))
    coo = host.tocoo()
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        with h5py.File(tmp, "w") as f:
            f.create_dataset("rows", data=np.asarray(coo.row, dtype=np.int64))
            f.create_dataset("cols", data=np.asarray(coo.col, dtype=np.int64))
            f.create_dataset("vals", data=np.asarray(coo.data, dtype=np.float64))
            f.attrs["shape"] = np.asarray(coo.shape, dtype=np.int64)
            f.attrs["key"] = key
            f.attrs["kind"] = kind
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise CheckpointError(_WRITE_ERROR.format(path=path, exc=exc)) from exc


def read_sparse(path: Path, *, key: str | None = None) -> csr_matrix:
    """Read a sparse matrix written by :func:`write_sparse`.

    Args:
        path: HDF5 file.
        key: If given, the stored key attribute must match.

    Raises:
        CheckpointError: If the file is unreadable or holds another key.

    Returns:
        Host CSR matrix (float64).
    """
    try:
        with h5py.File(path, "r") as f:
            rows = np.asarray(f["rows"][()], dtype=np.int64)
            cols = np.asarray(f["cols"][()], dtype=np.int64)
            vals = np.asarray(f["vals"][()], dtype=np.float64)
            shape = tuple(int(s) for s in f.attrs["shape"])
            stored_key = str(f.attrs.get("key", ""))
    except (OSError, KeyError) as exc:
        raise CheckpointError(_READ_ERROR.format(path=path, exc=exc)) from exc

    if key is not None and stored_key != key:
        raise CheckpointError(
            _KEY_MISMATCH_ERROR.format(path=path, found=stored_key, key=key)
        )
    out = coo_matrix((vals, (rows, cols)), shape=shape).tocsr()
    out.sort_indices()
    return cast("csr_matrix", out)


# =============================================================================
# Cache
# =============================================================================


class MatrixCache:
    """Directory-backed cache of assembled sparse operators.

    Attributes:
        directory: Cache directory (created on first write).
        hits: Number of lookups served from disk.
        misses: Number of lookups that invoked the builder.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        """Initialize the cache.

        Args:
            directory: Directory holding one ``{key}.h5`` file per operator.
        """
        self.directory = Path(directory)
        self.hits = 0
        self.misses = 0

    def __repr__(self) -> str:
        return f"MatrixCache({str(self.directory)!r}, hits={self.hits}, misses={self.misses})"

    def path_for(self, key: str) -> Path:
        """Path of the file holding ``key``."""
        return self.directory / f"{key}{_SUFFIX}"

    def contains(self, key: str) -> bool:
        """True when an entry for key exists on disk."""
        return self.path_for(key).is_file()

    def keys(self) -> list[str]:
        """Sorted list of cached keys."""
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob(f"*{_SUFFIX}"))

    def load(self, key: str) -> csr_matrix:
        """Load a cached operator.

        Raises:
            CheckpointError: If no entry exists or it cannot be read.
        """
        path = self.path_for(key)
        if not path.is_file():
            raise CheckpointError(_MISSING_ERROR.format(key=key, directory=self.directory))
        return read_sparse(path, key=key)

    def save(self, key: str, matrix: Any, *, kind: str = "") -> Path:
        """Persist an operator under key, replacing any existing entry."""
        path = self.path_for(key)
        write_sparse(path, matrix, key=key, kind=kind)
        logger.debug("Saved operator %s (%s) to %s", key, kind or "?", path)
        return path

    def get_or_build(
        self,
        key: str,
        builder: Callable[[], Any],
        *,
        kind: str = "",
    ) -> csr_matrix:
        """Return the cached operator for key, building and persisting on a miss.

        Args:
            key: Cache key (see :func:`cache_key`).
            builder: Zero-argument callable assembling the sparse matrix.
            kind: Operator kind recorded in the file metadata.

        Raises:
            TypeError: If the builder does not return a sparse matrix.
            CheckpointError: If the entry cannot be read or written.

        Returns:
            Host CSR matrix in natural DOF order.
        """
        if self.contains(key):
            self.hits += 1
            logger.info("Operator cache hit: %s", key)
            return self.load(key)

        self.misses += 1
        logger.info("Operator cache miss: %s; assembling", key)
        built = builder()
        host = convert(built, Architecture.HOST)
        if not issparse(host):
            raise TypeError(_BUILDER_RESULT_ERROR.format(key=key, typ=type(built)))
        matrix = cast("csr_matrix", host.tocsr().astype(np.float64))
        # Same canonical form a later load produces.
        matrix.sum_duplicates()
        matrix.sort_indices()
        self.save(key, matrix, kind=kind)
        return matrix

    def get_or_build_for(
        self,
        kind: str,
        signature: Mapping[str, Any],
        builder: Callable[[], Any],
    ) -> csr_matrix:
        """Convenience wrapper computing the key from kind and signature."""
        return self.get_or_build(cache_key(kind, signature), builder, kind=kind)

    def clear(self) -> int:
        """Delete every cached entry.

        Returns:
            Number of files removed.
        """
        removed = 0
        for key in self.keys():
            self.path_for(key).unlink(missing_ok=True)
            removed += 1
        return removed
