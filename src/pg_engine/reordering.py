# src/pg_engine/reordering.py
"""Degree-of-freedom reordering and global DOF layout.

The inversion system couples four variable blocks laid out as

    [velocity_x; velocity_y; velocity_z; pressure]

where the pressure block carries one fewer free DOF than its nominal
discretization because a zero-mean constraint removes one degree of freedom.
:class:`DofLayout` owns that layout and the fixed block offsets.

:class:`BandwidthReducer` computes a reverse-Cuthill-McKee style ordering for
each block from a cheap mass-type matrix and composes the block orderings
into one permutation over ``[0, N)`` by shifting each block by its offset.
Reordering clusters nonzeros near the diagonal, which reduces fill-in for
factorization-based preconditioners and improves locality for Krylov matvecs.

Backends:
    * host: ``scipy.sparse.csgraph.reverse_cuthill_mckee``.
    * accelerator: the device library has no RCM, so the pattern is pulled to
      host and ordered by a breadth-first sweep (neighbors by increasing
      degree) from a pseudo-peripheral node, then reversed. Both produce valid
      bijections; bandwidth need not match across backends.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import csr_matrix, issparse
from scipy.sparse.csgraph import reverse_cuthill_mckee

from .architecture import Architecture, convert
from .errors import ConfigurationError, raise_dimension_mismatch

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .architecture import ArchitectureAdapter

logger = logging.getLogger(__name__)

IndexArray = NDArray[np.int64]

_NOT_BIJECTION_ERROR = "Permutation of length {n} is not a bijection on [0, {n})"
_NOT_SQUARE_ERROR = "Block matrix {idx} must be square; got shape {shape}"
_EMPTY_BLOCKS_ERROR = "At least one block matrix is required"
_BLOCK_COUNT_ERROR = "Expected {expected} block matrices; got {got}"
_BLOCK_SIZE_ERROR = "Block {idx} has size {got}; layout expects {expected}"
_PRESSURE_DOF_ERROR = "n_pressure must be >= 2 (one DOF is removed by zero mean); got {n}"
_NEGATIVE_DOF_ERROR = "DOF counts must be non-negative; got {counts}"


# =============================================================================
# Permutation helpers
# =============================================================================


def validate_permutation(perm: NDArray[np.integer], n: int | None = None) -> IndexArray:
    """Validate that perm is a bijection on ``[0, n)``.

    Args:
        perm: Candidate permutation.
        n: Expected length; defaults to ``len(perm)``.

    Raises:
        ConfigurationError: If perm is not a bijection of the expected length.

    Returns:
        perm as a contiguous int64 array.
    """
    arr = np.ascontiguousarray(perm, dtype=np.int64)
    size = int(arr.size) if n is None else int(n)
    if arr.ndim != 1 or arr.size != size:
        raise ConfigurationError(_NOT_BIJECTION_ERROR.format(n=size))
    seen = np.zeros(size, dtype=bool)
    if size and (arr.min() < 0 or arr.max() >= size):
        raise ConfigurationError(_NOT_BIJECTION_ERROR.format(n=size))
    seen[arr] = True
    if not seen.all():
        raise ConfigurationError(_NOT_BIJECTION_ERROR.format(n=size))
    return arr


def invert_permutation(perm: NDArray[np.integer]) -> IndexArray:
    """Return the inverse permutation, so that ``x[perm][inv] == x``."""
    arr = validate_permutation(perm)
    inv = np.empty_like(arr)
    inv[arr] = np.arange(arr.size, dtype=np.int64)
    return inv


def identity_permutation(n: int) -> IndexArray:
    """Return the identity permutation on ``[0, n)``."""
    return np.arange(int(n), dtype=np.int64)


def compose_block_permutations(
    block_perms: Sequence[NDArray[np.integer]],
) -> IndexArray:
    """Concatenate block-local permutations, shifting each by its block offset.

    Args:
        block_perms: Permutation of each block, in global block order.

    Returns:
        Global permutation over the sum of the block sizes.
    """
    offset = 0
    parts: list[IndexArray] = []
    for perm in block_perms:
        block = validate_permutation(perm)
        parts.append(block + offset)
        offset += int(block.size)
    if not parts:
        return np.empty(0, dtype=np.int64)
    return np.concatenate(parts)


def bandwidth(matrix: Any) -> int:
    """Return the bandwidth ``max |i - j|`` over the nonzeros of a sparse matrix."""
    coo = cast("csr_matrix", convert(matrix, Architecture.HOST)).tocoo()
    if coo.nnz == 0:
        return 0
    return int(np.abs(coo.row.astype(np.int64) - coo.col.astype(np.int64)).max())


# =============================================================================
# Block orderings
# =============================================================================


def _symmetric_pattern(matrix: csr_matrix) -> csr_matrix:
    pattern = matrix.copy().tocsr()
    pattern.data = np.ones_like(pattern.data)
    sym = (pattern + pattern.T).tocsr()
    sym.sort_indices()
    return sym


def _pseudo_peripheral_node(pattern: csr_matrix, start: int, visited: NDArray[np.bool_]) -> int:
    """Walk to a node of (locally) maximal eccentricity in start's component."""
    node = start
    last_depth = -1
    for _ in range(pattern.shape[0]):
        depth = np.full(pattern.shape[0], -1, dtype=np.int64)
        depth[node] = 0
        queue: deque[int] = deque([node])
        while queue:
            u = queue.popleft()
            for v in pattern.indices[pattern.indptr[u] : pattern.indptr[u + 1]]:
                if depth[v] < 0 and not visited[v]:
                    depth[v] = depth[u] + 1
                    queue.append(int(v))
        max_depth = int(depth.max())
        if max_depth <= last_depth:
            break
        last_depth = max_depth
        far = np.flatnonzero(depth == max_depth)
        degrees = np.diff(pattern.indptr)[far]
        node = int(far[np.argmin(degrees)])
    return node


def degree_bfs_ordering(matrix: csr_matrix) -> IndexArray:
    """Reverse Cuthill-McKee ordering by explicit breadth-first sweeps.

    Used for the accelerator path. Each connected component is started from a
    pseudo-peripheral node; neighbors are enqueued by increasing degree.

    Args:
        matrix: Square sparse matrix (only the pattern is used).

    Returns:
        Permutation array.
    """
    pattern = _symmetric_pattern(matrix)
    n = pattern.shape[0]
    degree = np.diff(pattern.indptr)
    visited = np.zeros(n, dtype=bool)
    order: list[int] = []

    for seed in np.argsort(degree, kind="stable"):
        if visited[seed]:
            continue
        root = _pseudo_peripheral_node(pattern, int(seed), visited)
        visited[root] = True
        queue: deque[int] = deque([root])
        while queue:
            u = queue.popleft()
            order.append(u)
            nbrs = pattern.indices[pattern.indptr[u] : pattern.indptr[u + 1]]
            fresh = nbrs[~visited[nbrs]]
            for v in fresh[np.argsort(degree[fresh], kind="stable")]:
                visited[v] = True
                queue.append(int(v))

    return np.asarray(order[::-1], dtype=np.int64)


class BandwidthReducer:
    """Fill-in reducing DOF permutation per variable block."""

    def __init__(self, adapter: ArchitectureAdapter) -> None:
        """Initialize the reducer.

        Args:
            adapter: Architecture adapter deciding which ordering backend runs.
        """
        self.adapter = adapter

    def block_permutation(self, matrix: Any) -> IndexArray:
        """Compute the ordering of one block from its mass-type matrix.

        Args:
            matrix: Square sparse matrix on either architecture.

        Raises:
            ConfigurationError: If matrix is not square.

        Returns:
            Permutation of the block's DOFs.
        """
        host = cast("csr_matrix", convert(matrix, Architecture.HOST))
        if not issparse(host):
            host = csr_matrix(np.asarray(host))
        if host.shape[0] != host.shape[1]:
            raise ConfigurationError(_NOT_SQUARE_ERROR.format(idx=0, shape=host.shape))
        if host.shape[0] == 0:
            return np.empty(0, dtype=np.int64)

        if self.adapter.architecture.is_device:
            perm = degree_bfs_ordering(host)
        else:
            perm = np.asarray(
                reverse_cuthill_mckee(_symmetric_pattern(host), symmetric_mode=True),
                dtype=np.int64,
            )
        return validate_permutation(perm, host.shape[0])

    def compute_permutation(
        self,
        block_matrices: Sequence[Any],
    ) -> tuple[IndexArray, IndexArray]:
        """Compose block orderings into a global permutation and its inverse.

        Args:
            block_matrices: One mass-type matrix per variable block, in global
                block order.

        Raises:
            ConfigurationError: If no blocks are given or a block is not square.

        Returns:
            (perm, inverse_perm) over ``[0, sum(block sizes))``.
        """
        if not block_matrices:
            raise ConfigurationError(_EMPTY_BLOCKS_ERROR)

        block_perms: list[IndexArray] = []
        for idx, mat in enumerate(block_matrices):
            shape = tuple(mat.shape)
            if shape[0] != shape[1]:
                raise ConfigurationError(_NOT_SQUARE_ERROR.format(idx=idx, shape=shape))
            block_perms.append(self.block_permutation(mat))

        perm = compose_block_permutations(block_perms)
        inv = invert_permutation(perm)
        logger.debug(
            "Computed %s permutation over %d DOFs in %d block(s)",
            self.adapter.architecture.value,
            perm.size,
            len(block_perms),
        )
        return perm, inv

    def layout_permutation(
        self,
        layout: DofLayout,
        block_matrices: Sequence[Any],
    ) -> tuple[IndexArray, IndexArray]:
        """Like :meth:`compute_permutation`, checking block sizes against a layout.

        Args:
            layout: Global DOF layout of the inversion system.
            block_matrices: Mass-type matrices for (ux, uy, uz, p). The pressure
                matrix must already be on the constrained (n_p - 1) space.

        Raises:
            ConfigurationError: If the number or sizes of blocks do not match.

        Returns:
            (perm, inverse_perm) over ``[0, layout.n_total)``.
        """
        sizes = layout.block_sizes
        if len(block_matrices) != len(sizes):
            raise ConfigurationError(
                _BLOCK_COUNT_ERROR.format(expected=len(sizes), got=len(block_matrices))
            )
        for idx, (mat, expected) in enumerate(zip(block_matrices, sizes, strict=True)):
            if int(mat.shape[0]) != expected:
                raise ConfigurationError(
                    _BLOCK_SIZE_ERROR.format(idx=idx, got=mat.shape[0], expected=expected)
                )
        return self.compute_permutation(block_matrices)


# =============================================================================
# Global DOF layout
# =============================================================================


@dataclass(frozen=True, slots=True)
class DofLayout:
    """Fixed global DOF layout ``[ux; uy; uz; p]`` of the inversion system.

    Attributes:
        n_ux: Free DOFs of velocity_x.
        n_uy: Free DOFs of velocity_y.
        n_uz: Free DOFs of velocity_z.
        n_p: Nominal free DOFs of pressure before the zero-mean constraint.
    """

    n_ux: int
    n_uy: int
    n_uz: int
    n_p: int

    def __post_init__(self) -> None:
        counts = (self.n_ux, self.n_uy, self.n_uz, self.n_p)
        if any(int(c) < 0 for c in counts):
            raise ConfigurationError(_NEGATIVE_DOF_ERROR.format(counts=counts))
        if int(self.n_p) < 2:
            raise ConfigurationError(_PRESSURE_DOF_ERROR.format(n=self.n_p))

    @property
    def n_velocity(self) -> int:
        """Total velocity DOFs."""
        return int(self.n_ux + self.n_uy + self.n_uz)

    @property
    def n_pressure_free(self) -> int:
        """Pressure DOFs after the zero-mean constraint (``n_p - 1``)."""
        return int(self.n_p) - 1

    @property
    def n_total(self) -> int:
        """Dimension N of the inversion system, ``n_velocity + n_p - 1``."""
        return self.n_velocity + self.n_pressure_free

    @property
    def block_sizes(self) -> tuple[int, int, int, int]:
        """Sizes of the (ux, uy, uz, p) blocks in the global vector."""
        return (int(self.n_ux), int(self.n_uy), int(self.n_uz), self.n_pressure_free)

    @property
    def offsets(self) -> tuple[int, int, int, int, int]:
        """Block start offsets plus the total length as the final entry."""
        o1 = int(self.n_ux)
        o2 = o1 + int(self.n_uy)
        o3 = o2 + int(self.n_uz)
        return (0, o1, o2, o3, o3 + self.n_pressure_free)

    def split(
        self, vector: NDArray[np.floating]
    ) -> tuple[
        NDArray[np.floating],
        NDArray[np.floating],
        NDArray[np.floating],
        NDArray[np.floating],
    ]:
        """Slice a natural-ordered global vector into (ux, uy, uz, p) copies.

        Args:
            vector: Host vector of length ``n_total``.

        Raises:
            ConfigurationError: If the vector length does not match.

        Returns:
            Tuple of per-field copies.
        """
        arr = np.asarray(vector, dtype=np.float64)
        if arr.shape != (self.n_total,):
            raise_dimension_mismatch(
                name="global vector", expected=(self.n_total,), got=arr.shape
            )
        o = self.offsets
        return (
            arr[o[0] : o[1]].copy(),
            arr[o[1] : o[2]].copy(),
            arr[o[2] : o[3]].copy(),
            arr[o[3] : o[4]].copy(),
        )

    def concatenate(
        self,
        ux: NDArray[np.floating],
        uy: NDArray[np.floating],
        uz: NDArray[np.floating],
        p: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """Inverse of :meth:`split`.

        Raises:
            ConfigurationError: If any field has the wrong length.

        Returns:
            Natural-ordered global vector.
        """
        fields = (ux, uy, uz, p)
        names = ("ux", "uy", "uz", "p")
        arrs = [np.asarray(f, dtype=np.float64).ravel() for f in fields]
        for name, arr, size in zip(names, arrs, self.block_sizes, strict=True):
            if arr.size != size:
                raise_dimension_mismatch(name=name, expected=(size,), got=arr.shape)
        return np.concatenate(arrs)
