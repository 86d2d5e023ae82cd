"""
Sparse operator construction and the Operator container.

This module provides small, performance-oriented numerical utilities used by
the solver pipeline:

- Bulk sparse construction from accumulated (row, col, value) triples.
- Construction of common 1D linear operators (Laplacian, mass) used as
  reference problems and by the examples.
- Theta-scheme (Crank-Nicolson) operator pairs for the evolution equation.
- The :class:`Operator` container: a square sparse matrix stored in solver
  (permuted) order on the selected architecture, plus the permutation under
  which it was reordered.

Design notes:
    * Host-first construction: every builder returns SciPy CSR matrices on the
      host. Operators are moved to the accelerator exactly once, in
      :meth:`Operator.from_matrix`, after the one-time permutation.
    * Operators are immutable after construction and shared read-only by the
      solver toolkits for the whole run.
    * Permutation convention: ``A_perm = A[perm][:, perm]``. Solving
      ``A_perm y = rhs[perm]`` gives ``x = y[inverse_perm]``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

import numpy as np
from numpy.typing import DTypeLike, NDArray
from scipy.sparse import bmat, coo_matrix, csr_matrix, diags, issparse

from .architecture import Architecture, convert
from .errors import ConfigurationError
from .reordering import identity_permutation, invert_permutation, validate_permutation

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .architecture import ArchitectureAdapter


# =============================================================================
# Error message constants
# =============================================================================

_UNKNOWN_BC_ERROR = "Unknown bc: {bc}"
_OPERATORS_SQUARE_ERROR = "Operator must be square; got shape {shape}"
_SHAPE_MISMATCH_ERROR = "Matrices must share a shape; got {a} and {b}"
_TRIPLET_INDEX_ERROR = "Triplet index out of bounds for shape {shape}: ({row}, {col})"
_TRIPLET_LENGTH_ERROR = "rows, cols and values must have equal length; got {lengths}"
_OPERATOR_SCALE_ERROR = "theta must be a finite float; got {theta}"
_PERM_ROWS_ERROR = "Row permutation length {n} does not match matrix rows {rows}"


# =============================================================================
# Triplet accumulation
# =============================================================================


class TripletBuilder:
    """Accumulate (row, col, value) triples, then build a CSR matrix once.

    Duplicate entries are summed on :meth:`build`, which matches finite-element
    style accumulation of element contributions.
    """

    def __init__(self, shape: tuple[int, int], dtype: DTypeLike = np.float64) -> None:
        """Initialize an empty builder.

        Args:
            shape: Shape (n_rows, n_cols) of the matrix to build.
            dtype: Floating dtype of the values.
        """
        self.shape = (int(shape[0]), int(shape[1]))
        self.dtype = np.dtype(dtype)
        self._rows: list[NDArray[np.int64]] = []
        self._cols: list[NDArray[np.int64]] = []
        self._vals: list[NDArray[np.floating]] = []
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def add(self, row: int, col: int, value: float) -> None:
        """Append a single triple."""
        self.add_many([row], [col], [value])

    def add_many(
        self,
        rows: Sequence[int] | NDArray[np.integer],
        cols: Sequence[int] | NDArray[np.integer],
        values: Sequence[float] | NDArray[np.floating],
    ) -> None:
        """Append a batch of triples.

        Args:
            rows: Row indices.
            cols: Column indices.
            values: Values.

        Raises:
            ValueError: If lengths differ or an index is out of bounds.
        """
        r = np.asarray(rows, dtype=np.int64).ravel()
        c = np.asarray(cols, dtype=np.int64).ravel()
        v = np.asarray(values, dtype=self.dtype).ravel()
        if not (r.size == c.size == v.size):
            raise ValueError(_TRIPLET_LENGTH_ERROR.format(lengths=(r.size, c.size, v.size)))
        if r.size == 0:
            return
        bad = (r < 0) | (r >= self.shape[0]) | (c < 0) | (c >= self.shape[1])
        if bad.any():
            i = int(np.flatnonzero(bad)[0])
            raise ValueError(
                _TRIPLET_INDEX_ERROR.format(shape=self.shape, row=r[i], col=c[i])
            )
        self._rows.append(r)
        self._cols.append(c)
        self._vals.append(v)
        self._count += int(r.size)

    def add_block(
        self,
        block: NDArray[np.floating],
        row_dofs: Sequence[int] | NDArray[np.integer],
        col_dofs: Sequence[int] | NDArray[np.integer] | None = None,
    ) -> None:
        """Scatter a dense local block (e.g. an element matrix).

        Args:
            block: Dense (len(row_dofs), len(col_dofs)) block.
            row_dofs: Global row index of each local row.
            col_dofs: Global column index of each local column (defaults to
                row_dofs).
        """
        rd = np.asarray(row_dofs, dtype=np.int64)
        cd = rd if col_dofs is None else np.asarray(col_dofs, dtype=np.int64)
        blk = np.asarray(block, dtype=self.dtype).reshape(rd.size, cd.size)
        self.add_many(np.repeat(rd, cd.size), np.tile(cd, rd.size), blk.ravel())

    def build(self) -> csr_matrix:
        """Bulk-construct the CSR matrix (duplicates summed)."""
        if self._count == 0:
            return csr_matrix(self.shape, dtype=self.dtype)
        rows = np.concatenate(self._rows)
        cols = np.concatenate(self._cols)
        vals = np.concatenate(self._vals)
        out = coo_matrix((vals, (rows, cols)), shape=self.shape, dtype=self.dtype).tocsr()
        out.sum_duplicates()
        out.sort_indices()
        return cast("csr_matrix", out)


# =============================================================================
# Reference 1D operators
# =============================================================================


def build_laplacian_tridiag(
    n: int,
    dx: float,
    coeff: float | NDArray[np.floating] = 1.0,
    dtype: DTypeLike = np.float64,
    bc: str = "dirichlet",
) -> csr_matrix:
    """Build a Laplacian tridiagonal matrix for a given boundary condition.

    The resulting operator corresponds to ``coeff * Δ_h``, where ``Δ_h`` is the
    standard second-order central-difference Laplacian in 1D on interior (or
    cell-centered) points. It is negative semi-definite.

    Args:
        n: Number of grid points.
        dx: Grid spacing.
        coeff: Diffusivity, scalar or per-point array of length n. A variable
            coefficient is applied symmetrically as ``sqrt(k) Δ_h sqrt(k)``.
        dtype: Floating dtype (e.g. np.float64).
        bc: Boundary condition; either "dirichlet" or "neumann".

    Raises:
        ValueError: If an unknown boundary condition is provided.

    Returns:
        Sparse CSR matrix representing the Laplacian operator.
    """
    dtype_obj = np.dtype(dtype)

    main_diag = -2.0 * np.ones(n, dtype=dtype_obj)
    off_diag = np.ones(n - 1, dtype=dtype_obj)

    if bc == "neumann":
        main_diag[0] = -1.0
        main_diag[-1] = -1.0
    elif bc != "dirichlet":
        msg = _UNKNOWN_BC_ERROR.format(bc=bc)
        raise ValueError(msg)

    laplacian = diags(
        [off_diag, main_diag, off_diag],
        [-1, 0, 1],
        shape=(n, n),
        dtype=dtype_obj,
    ).tocsr() / dx**2

    coeff_arr = np.asarray(coeff, dtype=dtype_obj)
    if coeff_arr.ndim == 0:
        return cast("csr_matrix", (laplacian * float(coeff_arr)).tocsr())

    root = diags(np.sqrt(coeff_arr), 0, shape=(n, n), dtype=dtype_obj)
    return cast("csr_matrix", (root @ laplacian @ root).tocsr())


def build_mass_matrix(
    n: int,
    dx: float,
    *,
    lumped: bool = False,
    dtype: DTypeLike = np.float64,
) -> csr_matrix:
    """Build a 1D piecewise-linear mass matrix on interior nodes.

    Args:
        n: Number of nodes.
        dx: Element length.
        lumped: If True, return the row-sum lumped (diagonal) mass matrix.
        dtype: Floating dtype.

    Returns:
        Sparse CSR mass matrix (symmetric positive definite).
    """
    dtype_obj = np.dtype(dtype)
    if lumped:
        return cast("csr_matrix", diags(np.full(n, dx, dtype=dtype_obj), 0).tocsr())
    main = np.full(n, 4.0 * dx / 6.0, dtype=dtype_obj)
    off = np.full(n - 1, dx / 6.0, dtype=dtype_obj)
    return cast(
        "csr_matrix",
        diags([off, main, off], [-1, 0, 1], shape=(n, n), dtype=dtype_obj).tocsr(),
    )


def build_theta_operators(
    mass: csr_matrix,
    stiffness: csr_matrix,
    theta: float,
) -> tuple[csr_matrix, csr_matrix]:
    """Build the theta-scheme pair for ``M db/dt = -K b``.

    With ``theta = dt/2 * (diffusivity scale)`` this is Crank-Nicolson:

        (M + theta K) b^{n+1} = (M - theta K) b^n

    Args:
        mass: Mass matrix M.
        stiffness: Positive semi-definite stiffness matrix K.
        theta: Time-step scaling factor.

    Raises:
        ValueError: If theta is not finite or the shapes differ.

    Returns:
        Tuple of (L, R) operators.
    """
    if not np.isfinite(theta):
        raise ValueError(_OPERATOR_SCALE_ERROR.format(theta=theta))
    if mass.shape != stiffness.shape:
        raise ValueError(_SHAPE_MISMATCH_ERROR.format(a=mass.shape, b=stiffness.shape))

    m = mass.tocsr()
    k = stiffness.tocsr()
    left_op = (m + theta * k).tocsr()
    right_op = (m - theta * k).tocsr()
    return cast("csr_matrix", left_op), cast("csr_matrix", right_op)


def assemble_block_operator(blocks: Sequence[Sequence[Any]]) -> csr_matrix:
    """Assemble a block matrix (``None`` entries are zero blocks) into CSR."""
    return cast("csr_matrix", bmat(blocks, format="csr"))


def block_diag_operator(blocks: Sequence[Any]) -> csr_matrix:
    """Assemble square blocks along the diagonal into one CSR matrix."""
    n = len(blocks)
    grid = [[blk if i == j else None for j in range(n)] for i, blk in enumerate(blocks)]
    return assemble_block_operator(grid)


def is_symmetric(matrix: Any, *, rtol: float = 1e-12) -> bool:
    """Return True if a sparse matrix is symmetric to relative tolerance rtol."""
    host = cast("csr_matrix", convert(matrix, Architecture.HOST))
    if host.shape[0] != host.shape[1]:
        return False
    diff = (host - host.T).tocsr()
    if diff.nnz == 0:
        return True
    scale = float(np.abs(host.data).max()) if host.nnz else 0.0
    return float(np.abs(diff.data).max()) <= rtol * max(scale, 1.0)


# =============================================================================
# Permutations of sparse matrices
# =============================================================================


def permute_symmetric(matrix: csr_matrix, perm: NDArray[np.integer]) -> csr_matrix:
    """Return ``matrix[perm][:, perm]`` as CSR."""
    mat = matrix.tocsr()
    p = validate_permutation(perm, mat.shape[0])
    return cast("csr_matrix", mat[p][:, p].tocsr())


def permute_rows(matrix: csr_matrix, perm: NDArray[np.integer]) -> csr_matrix:
    """Return ``matrix[perm, :]`` as CSR (for rectangular RHS operators).

    Raises:
        ValueError: If the permutation length does not match the row count.
    """
    mat = matrix.tocsr()
    if len(perm) != mat.shape[0]:
        raise ValueError(_PERM_ROWS_ERROR.format(n=len(perm), rows=mat.shape[0]))
    p = validate_permutation(perm, mat.shape[0])
    return cast("csr_matrix", mat[p, :].tocsr())


# =============================================================================
# Operator container
# =============================================================================


@dataclass(frozen=True, slots=True)
class Operator:
    """Square sparse operator in solver order plus its permutation.

    Attributes:
        matrix: Permuted CSR matrix on ``architecture``.
        perm: Host permutation (natural -> solver order).
        inverse_perm: Host inverse permutation (solver -> natural order).
        architecture: Architecture the matrix lives on.
        perm_index: ``perm`` on ``architecture`` for vector gathers.
        inverse_index: ``inverse_perm`` on ``architecture``.
    """

    matrix: Any
    perm: NDArray[np.int64]
    inverse_perm: NDArray[np.int64]
    architecture: Architecture
    perm_index: Any = field(repr=False)
    inverse_index: Any = field(repr=False)

    @classmethod
    def from_matrix(
        cls,
        matrix: Any,
        adapter: ArchitectureAdapter,
        perm: NDArray[np.integer] | None = None,
    ) -> Operator:
        """Permute a natural-ordered matrix once and place it on the architecture.

        Binds the adapter: the architecture selection is frozen from here on.

        Args:
            matrix: Square sparse (or dense) matrix in natural DOF order.
            adapter: Architecture adapter.
            perm: Permutation into solver order (identity if None).

        Raises:
            ConfigurationError: If the matrix is not square or perm is invalid.

        Returns:
            Immutable Operator.
        """
        host = convert(matrix, Architecture.HOST)
        if not issparse(host):
            host = csr_matrix(np.asarray(host))
        host = cast("csr_matrix", host.tocsr().astype(np.float64))

        shape = cast("tuple[int, int]", host.shape)
        if shape[0] != shape[1]:
            raise ConfigurationError(_OPERATORS_SQUARE_ERROR.format(shape=shape))

        p = identity_permutation(shape[0]) if perm is None else validate_permutation(
            perm, shape[0]
        )
        inv = invert_permutation(p)
        permuted = host if perm is None else permute_symmetric(host, p)

        adapter.bind()
        return cls(
            matrix=adapter.on_architecture(permuted),
            perm=p,
            inverse_perm=inv,
            architecture=adapter.architecture,
            perm_index=adapter.index(p),
            inverse_index=adapter.index(inv),
        )

    @property
    def shape(self) -> tuple[int, int]:
        """Operator shape (N, N)."""
        return cast("tuple[int, int]", tuple(self.matrix.shape))

    @property
    def dimension(self) -> int:
        """Operator dimension N."""
        return int(self.matrix.shape[0])

    @property
    def nnz(self) -> int:
        """Number of stored nonzeros."""
        return int(self.matrix.nnz)

    def diagonal(self) -> Any:
        """Diagonal of the permuted matrix, on the operator's architecture."""
        return self.matrix.diagonal()

    def to_solver_order(self, vector: Any) -> Any:
        """Gather a natural-ordered vector (same architecture) into solver order."""
        return vector[self.perm_index]

    def from_solver_order(self, vector: Any) -> Any:
        """Gather a solver-ordered vector (same architecture) into natural order."""
        return vector[self.inverse_index]

    def to_host(self) -> csr_matrix:
        """Return the natural-ordered matrix on the host."""
        host = cast("csr_matrix", convert(self.matrix, Architecture.HOST))
        return permute_symmetric(host, self.inverse_perm)
