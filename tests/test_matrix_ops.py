# tests/test_matrix_ops.py
"""Unit tests for pg_engine.matrix_ops.

This module verifies:
- Laplacian and mass matrix construction.
- Theta-scheme (Crank-Nicolson) operator pairs.
- Triplet accumulation with duplicate summation.
- Row and symmetric permutations.
- Operator construction, solver-order gathers and host round trip.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest
from scipy.sparse import csr_matrix, identity, random as sparse_random

from pg_engine.architecture import Architecture, ArchitectureAdapter
from pg_engine.errors import ConfigurationError
from pg_engine.matrix_ops import (
    Operator,
    TripletBuilder,
    block_diag_operator,
    build_laplacian_tridiag,
    build_mass_matrix,
    build_theta_operators,
    is_symmetric,
    permute_rows,
    permute_symmetric,
)
from pg_engine.reordering import invert_permutation

if TYPE_CHECKING:
    from conftest import ToyProblem


# -------------------------------------------------------------------
# Reference operators
# -------------------------------------------------------------------


def test_laplacian_tridiag_neumann_structure_small() -> None:
    """Laplacian with Neumann BC has endpoint -1 on the main diagonal (scaled)."""
    a_dense = build_laplacian_tridiag(5, 1.0, 1.0, bc="neumann").toarray()

    assert np.allclose(a_dense, a_dense.T)
    main_diag = np.diag(a_dense)
    assert main_diag[0] == pytest.approx(-1.0)
    assert main_diag[-1] == pytest.approx(-1.0)
    assert np.allclose(main_diag[1:-1], -2.0)
    assert np.allclose(np.diag(a_dense, k=1), 1.0)
    assert np.allclose(np.diag(a_dense, k=-1), 1.0)


def test_laplacian_tridiag_dirichlet_scaled() -> None:
    """Dirichlet Laplacian is -2/dx^2 on the diagonal times the coefficient."""
    dx = 0.5
    a_dense = build_laplacian_tridiag(4, dx, 3.0).toarray()
    assert np.allclose(np.diag(a_dense), -2.0 * 3.0 / dx**2)
    assert np.allclose(np.diag(a_dense, k=1), 3.0 / dx**2)


def test_laplacian_variable_coefficient_is_symmetric() -> None:
    """A per-node coefficient keeps the operator symmetric."""
    coeff = np.linspace(1.0, 2.0, 6)
    a = build_laplacian_tridiag(6, 0.1, coeff)
    assert is_symmetric(a)
    assert np.allclose(np.diag(a.toarray()), -2.0 * coeff / 0.01)


def test_laplacian_unknown_bc_raises() -> None:
    """Unknown boundary conditions raise ValueError."""
    with pytest.raises(ValueError, match="Unknown bc"):
        _ = build_laplacian_tridiag(5, 1.0, 1.0, bc="nope")


def test_mass_matrix_consistent_and_lumped() -> None:
    """Consistent and lumped mass matrices share the interior row sums."""
    dx = 0.2
    consistent = build_mass_matrix(5, dx).toarray()
    lumped = build_mass_matrix(5, dx, lumped=True).toarray()

    assert np.allclose(consistent, consistent.T)
    assert np.allclose(consistent.sum(axis=1)[1:-1], dx)
    assert np.allclose(np.diag(lumped), dx)
    assert np.count_nonzero(lumped - np.diag(np.diag(lumped))) == 0


def test_theta_operators_match_formula() -> None:
    """(L, R) = (M + theta K, M - theta K)."""
    m = build_mass_matrix(6, 0.1)
    k = -build_laplacian_tridiag(6, 0.1)
    left, right = build_theta_operators(m, k, 0.25)
    assert np.allclose(left.toarray(), m.toarray() + 0.25 * k.toarray())
    assert np.allclose(right.toarray(), m.toarray() - 0.25 * k.toarray())


def test_theta_operators_reject_bad_input() -> None:
    """Non-finite theta and mismatched shapes raise ValueError."""
    m = identity(3, format="csr")
    with pytest.raises(ValueError, match="theta"):
        build_theta_operators(m, m, float("nan"))
    with pytest.raises(ValueError, match="share a shape"):
        build_theta_operators(m, identity(4, format="csr"), 0.1)


def test_block_diag_operator() -> None:
    """Diagonal blocks are placed at cumulative offsets."""
    a = csr_matrix(np.array([[1.0, 2.0], [3.0, 4.0]]))
    b = csr_matrix(np.array([[5.0]]))
    out = block_diag_operator([a, b]).toarray()
    expected = np.array([[1.0, 2.0, 0.0], [3.0, 4.0, 0.0], [0.0, 0.0, 5.0]])
    assert np.array_equal(out, expected)


def test_is_symmetric(toy: ToyProblem) -> None:
    """The diffusion operator is symmetric; the saddle-point system is not."""
    assert is_symmetric(toy.evolution_lhs)
    assert not is_symmetric(toy.inversion_lhs)
    assert not is_symmetric(csr_matrix(np.ones((2, 3))))


# -------------------------------------------------------------------
# Triplets
# -------------------------------------------------------------------


def test_triplet_builder_sums_duplicates() -> None:
    """Repeated (row, col) entries are summed on build."""
    builder = TripletBuilder((3, 3))
    builder.add(0, 0, 1.0)
    builder.add(0, 0, 2.5)
    builder.add_many([1, 2], [2, 1], [4.0, -1.0])
    assert len(builder) == 4

    out = builder.build()
    assert isinstance(out, csr_matrix)
    assert out[0, 0] == pytest.approx(3.5)
    assert out[1, 2] == pytest.approx(4.0)
    assert out[2, 1] == pytest.approx(-1.0)
    assert out.nnz == 3


def test_triplet_builder_add_block_matches_assembly() -> None:
    """Scattering 1D element stiffness blocks reproduces the tridiagonal stencil."""
    n = 5
    builder = TripletBuilder((n, n))
    element = np.array([[1.0, -1.0], [-1.0, 1.0]])
    for e in range(n - 1):
        builder.add_block(element, [e, e + 1])
    out = builder.build().toarray()

    expected = np.diag([1.0, 2.0, 2.0, 2.0, 1.0])
    expected += np.diag(-np.ones(n - 1), 1) + np.diag(-np.ones(n - 1), -1)
    assert np.array_equal(out, expected)


def test_triplet_builder_empty_and_invalid() -> None:
    """Empty builders give an empty matrix; bad triples raise ValueError."""
    builder = TripletBuilder((2, 4))
    empty = builder.build()
    assert empty.shape == (2, 4)
    assert empty.nnz == 0

    with pytest.raises(ValueError, match="out of bounds"):
        builder.add(2, 0, 1.0)
    with pytest.raises(ValueError, match="equal length"):
        builder.add_many([0, 1], [0], [1.0, 2.0])


# -------------------------------------------------------------------
# Permutations and Operator
# -------------------------------------------------------------------


def test_permute_symmetric_and_rows(rng: np.random.Generator) -> None:
    """Permutations gather rows (and columns) in the given order."""
    dense = rng.standard_normal((5, 5))
    perm = np.array([3, 0, 4, 1, 2])
    mat = csr_matrix(dense)

    assert np.array_equal(permute_symmetric(mat, perm).toarray(), dense[perm][:, perm])

    rect = csr_matrix(rng.standard_normal((5, 3)))
    assert np.array_equal(permute_rows(rect, perm).toarray(), rect.toarray()[perm, :])
    with pytest.raises(ValueError, match="does not match"):
        permute_rows(rect, np.array([0, 1, 2]))


def test_operator_from_matrix_solver_order_round_trip(
    host_adapter: ArchitectureAdapter,
    rng: np.random.Generator,
) -> None:
    """Solving in solver order and gathering back matches the natural system."""
    n = 12
    mat = sparse_random(n, n, density=0.3, format="csr", random_state=11) + 5.0 * identity(n)
    perm = rng.permutation(n)
    op = Operator.from_matrix(mat, host_adapter, perm)

    assert host_adapter.is_bound
    assert op.architecture is Architecture.HOST
    assert op.dimension == n
    assert np.array_equal(op.inverse_perm, invert_permutation(perm))

    x = rng.standard_normal(n)
    natural_rhs = mat @ x
    y = op.to_solver_order(x)
    assert np.allclose(op.matrix @ y, op.to_solver_order(natural_rhs))
    assert np.array_equal(op.from_solver_order(op.to_solver_order(x)), x)
    assert np.allclose(op.to_host().toarray(), mat.toarray())


def test_operator_identity_permutation_by_default(host_adapter: ArchitectureAdapter) -> None:
    """Without a permutation the matrix is stored unchanged (as float64 CSR)."""
    mat = csr_matrix(np.array([[2, 1], [0, 3]]))
    op = Operator.from_matrix(mat, host_adapter)
    assert op.matrix.dtype == np.float64
    assert np.array_equal(op.perm, np.arange(2))
    assert np.array_equal(op.matrix.toarray(), mat.toarray())


def test_operator_rejects_non_square_and_bad_perm() -> None:
    """Non-square matrices and invalid permutations raise ConfigurationError."""
    adapter = ArchitectureAdapter()
    with pytest.raises(ConfigurationError, match="square"):
        Operator.from_matrix(csr_matrix(np.ones((2, 3))), adapter)
    with pytest.raises(ConfigurationError, match="bijection"):
        Operator.from_matrix(identity(3, format="csr"), adapter, np.array([0, 0, 1]))
