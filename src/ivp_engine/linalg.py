"""
Linear solves for implicit steppers.

Implicit steppers repeatedly solve ``M @ delta = rhs`` inside a Newton
iteration, where ``M`` is an iteration matrix assembled from the problem
Jacobian (for example ``I - h * dF/dy``). The matrix is factorized once per
trial step and the factorization is reused for every Newton update.

Design notes:
    * Dense paths rely on SciPy LAPACK (``lu_factor``/``lu_solve``); sparse
      paths rely on SciPy's sparse ``factorized``.
    * Singular matrices are reported uniformly as ``numpy.linalg.LinAlgError``
      so steppers can turn them into an aborted step.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING, Final, TypeAlias, cast

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve
from scipy.sparse import csc_matrix, csr_matrix, identity, issparse
from scipy.sparse.linalg import factorized as sparse_factorized

if TYPE_CHECKING:
    from collections.abc import Callable

DenseMatrix: TypeAlias = NDArray[np.floating]
SparseMatrix: TypeAlias = csr_matrix | csc_matrix
Matrix: TypeAlias = DenseMatrix | SparseMatrix
LinearSolver: TypeAlias = "Callable[[NDArray[np.floating]], NDArray[np.floating]]"

_SQUARE_ERROR: Final[str] = "Iteration matrix must be square, got shape {shape}"
_SINGULAR_ERROR: Final[str] = "Iteration matrix is singular"
_NON_FINITE_ERROR: Final[str] = "Iteration matrix contains non-finite entries"


def _validate_square(mat: Matrix) -> int:
    shape = cast("tuple[int, int]", mat.shape)
    if len(shape) != 2 or shape[0] != shape[1]:
        raise ValueError(_SQUARE_ERROR.format(shape=shape))
    return int(shape[0])


def iteration_matrix(jac: Matrix, *, a: float, b: float) -> Matrix:
    """
    Assemble ``a * I + b * jac`` keeping the sparse/dense format of ``jac``.

    Args:
        jac: Square Jacobian (dense ndarray or SciPy sparse matrix).
        a: Identity coefficient.
        b: Jacobian coefficient.

    Returns:
        The iteration matrix in the same storage family as ``jac``.
    """
    n = _validate_square(jac)
    if issparse(jac):
        return cast("SparseMatrix", (a * identity(n, format="csc") + b * jac).tocsc())
    out = np.asarray(jac, dtype=np.float64) * b
    out[np.diag_indices(n)] += a
    return out


def factorize(mat: Matrix) -> LinearSolver:
    """
    Factorize a square matrix and return a reusable solver.

    Args:
        mat: Square matrix (dense ndarray or SciPy sparse matrix).

    Raises:
        numpy.linalg.LinAlgError: If the matrix is singular or not finite.

    Returns:
        A callable that takes ``rhs`` and returns ``x`` with ``mat @ x = rhs``.
    """
    _validate_square(mat)

    if issparse(mat):
        mat_csc = cast("SparseMatrix", mat).tocsc()
        if not np.all(np.isfinite(mat_csc.data)):
            raise np.linalg.LinAlgError(_NON_FINITE_ERROR)
        try:
            solve_sparse = sparse_factorized(mat_csc)
        except RuntimeError as exc:
            raise np.linalg.LinAlgError(_SINGULAR_ERROR) from exc

        def sparse_solver(rhs: NDArray[np.floating]) -> NDArray[np.floating]:
            return np.asarray(solve_sparse(np.asarray(rhs)), dtype=np.float64)

        return sparse_solver

    dense = np.asarray(mat, dtype=np.float64)
    if not np.all(np.isfinite(dense)):
        raise np.linalg.LinAlgError(_NON_FINITE_ERROR)
    with warnings.catch_warnings():
        # exactly-zero pivots are reported below as LinAlgError
        warnings.simplefilter("ignore", LinAlgWarning)
        lu, piv = lu_factor(dense, check_finite=False)
    if np.any(np.diag(lu) == 0.0):
        raise np.linalg.LinAlgError(_SINGULAR_ERROR)

    def dense_solver(rhs: NDArray[np.floating]) -> NDArray[np.floating]:
        """
        Perform a dense solve using the precomputed LU factorization.

        Args:
            rhs: 1D right-hand side.

        Returns:
            Solution vector.
        """
        out = lu_solve((lu, piv), np.asarray(rhs, dtype=np.float64))
        return np.asarray(out, dtype=np.float64)

    return dense_solver
