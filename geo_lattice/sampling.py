"""
Gaussian sampling in precision form.

Draws from N(Q^-1 b, Q^-1), optionally conditioned on linear equality
constraints A x = a, using a Cholesky factor of Q and triangular solves.
Neither Q^-1 nor the covariance is ever formed.
"""

import numpy as np
from scipy import sparse
from scipy.linalg import cholesky, cho_solve, solve_triangular, LinAlgError
from sksparse import cholmod
from typing import Optional

from geo_lattice.exceptions import ConstraintError, MatrixError, NumericalError


def _as_columns(apply, b: np.ndarray) -> np.ndarray:
    """Apply a CHOLMOD operation to a vector or to the columns of a matrix."""
    b = np.asarray(b, dtype=float)
    if b.ndim == 1:
        return np.asarray(apply(b[:, None])).ravel()
    return np.asarray(apply(np.ascontiguousarray(b)))


class CholeskyFactor:
    """
    Cholesky factor of a precision matrix.

    Sparse precisions are factored by CHOLMOD with a fill-reducing
    permutation P, P Q P^T = L L^T; dense ones by LAPACK, Q = L L^T.
    Either way solve_transpose(z) returns a vector with covariance Q^-1
    when z is standard normal.

    Parameters
    ----------
    Q : np.ndarray or sparse matrix
        Symmetric positive definite precision matrix
    block : str, optional
        Name of the parameter block Q belongs to, reported on failure
    """

    def __init__(self, Q, block: Optional[str] = None):
        self.block = block
        self.is_sparse = sparse.issparse(Q)
        if not self.is_sparse:
            Q = np.asarray(Q, dtype=float)

        if Q.ndim != 2 or Q.shape[0] != Q.shape[1]:
            raise MatrixError(f"Precision matrix must be square, got shape {Q.shape}")

        if self.is_sparse:
            Q = sparse.csc_matrix(Q, dtype=float)
            if np.any(~np.isfinite(Q.data)):
                raise NumericalError("Precision matrix contains NaN or infinite values", block=block)
            try:
                # supernodal LL^T reports a non positive definite Q
                self.factor = cholmod.cholesky(Q, mode="supernodal")
            except cholmod.CholmodError as e:
                raise NumericalError(
                    f"Sparse Cholesky factorization failed, precision is not positive definite: {e}",
                    block=block
                ) from e
            self._n = Q.shape[0]
        else:
            if np.any(~np.isfinite(Q)):
                raise NumericalError("Precision matrix contains NaN or infinite values", block=block)
            try:
                self.L = cholesky(Q, lower=True, check_finite=False)
            except LinAlgError as e:
                raise NumericalError(
                    f"Cholesky factorization failed, precision is not positive definite: {e}",
                    block=block
                ) from e
            self._n = Q.shape[0]

    @property
    def n(self) -> int:
        return self._n

    def solve(self, b: np.ndarray) -> np.ndarray:
        """Return Q^-1 b using forward and back substitution."""
        if self.is_sparse:
            return _as_columns(self.factor, b)
        return cho_solve((self.L, True), b, check_finite=False)

    def solve_transpose(self, z: np.ndarray) -> np.ndarray:
        """Return L^-T z, permuted back to the original ordering for sparse Q."""
        if self.is_sparse:
            return _as_columns(
                lambda x: self.factor.apply_Pt(self.factor.solve_Lt(x, use_LDLt_decomposition=False)),
                z
            )
        return solve_triangular(self.L, z, lower=True, trans='T', check_finite=False)

    def log_det(self) -> float:
        """Log determinant of Q."""
        if self.is_sparse:
            return float(self.factor.logdet())
        return float(2.0 * np.sum(np.log(np.diag(self.L))))


def sample_precision(
    factor: CholeskyFactor,
    b: np.ndarray,
    rng: np.random.Generator,
    size: Optional[int] = None
) -> np.ndarray:
    """
    Draw from N(Q^-1 b, Q^-1) given the Cholesky factor of Q.

    x = Q^-1 b + L^-T z with z standard normal, so Cov(x) = (L L^T)^-1.

    Parameters
    ----------
    factor : CholeskyFactor
        Factor of the precision matrix Q
    b : np.ndarray
        Vector such that the mean is Q^-1 b
    rng : np.random.Generator
        Random number generator
    size : int, optional
        Number of draws. If None a single vector is returned.

    Returns
    -------
    np.ndarray
        Draw of shape (n,) or draws of shape (size, n)
    """
    b = np.asarray(b, dtype=float)
    if b.shape != (factor.n,):
        raise ConstraintError(f"Expected b of shape ({factor.n},), got {b.shape}")

    mean = factor.solve(b)
    if size is None:
        z = rng.standard_normal(factor.n)
        return mean + factor.solve_transpose(z)

    z = rng.standard_normal((factor.n, size))
    return (mean[:, None] + factor.solve_transpose(z)).T


def _check_constraints(A: np.ndarray, a: np.ndarray, n: int):
    if sparse.issparse(A):
        A = A.toarray()
    A = np.atleast_2d(np.asarray(A, dtype=float))
    a = np.atleast_1d(np.asarray(a, dtype=float))

    if A.shape[1] != n:
        raise ConstraintError(f"Constraint matrix has {A.shape[1]} columns, expected {n}")
    if a.shape != (A.shape[0],):
        raise ConstraintError(f"Constraint target must have shape ({A.shape[0]},), got {a.shape}")
    if np.any(~np.isfinite(A)) or np.any(~np.isfinite(a)):
        raise ConstraintError("Constraint system contains NaN or infinite values")

    rank = np.linalg.matrix_rank(A)
    if rank < A.shape[0]:
        raise ConstraintError(
            f"Constraint matrix is rank-deficient (rank {rank} < {A.shape[0]} rows)"
        )
    return A, a


def sample_constrained(
    factor: CholeskyFactor,
    b: np.ndarray,
    A: np.ndarray,
    a: np.ndarray,
    rng: np.random.Generator,
    size: Optional[int] = None
) -> np.ndarray:
    """
    Draw from N(Q^-1 b, Q^-1) conditioned on A x = a.

    An unconstrained draw x0 is corrected by kriging on the constraint:
        x = x0 - Q^-1 A^T (A Q^-1 A^T)^-1 (A x0 - a)
    which is an exact draw from the conditional distribution.

    Parameters
    ----------
    factor : CholeskyFactor
        Factor of the precision matrix Q
    b : np.ndarray
        Vector such that the unconstrained mean is Q^-1 b
    A : np.ndarray
        Constraint matrix (k x n), full row rank
    a : np.ndarray
        Constraint target (k,)
    rng : np.random.Generator
        Random number generator
    size : int, optional
        Number of draws. If None a single vector is returned.

    Returns
    -------
    np.ndarray
        Draw of shape (n,) or draws of shape (size, n)
    """
    A, a = _check_constraints(A, a, factor.n)

    x0 = sample_precision(factor, b, rng, size=size)

    V = factor.solve(A.T)
    S = A @ V
    S = 0.5 * (S + S.T)
    try:
        S_factor = cholesky(S, lower=True, check_finite=False)
    except LinAlgError as e:
        raise NumericalError(
            f"Constraint system A Q^-1 A^T is singular: {e}", block=factor.block
        ) from e

    residual = x0 @ A.T - a
    delta = cho_solve((S_factor, True), residual.T, check_finite=False)
    return x0 - (V @ delta).T


def sample_gaussian(
    Q,
    b: np.ndarray,
    rng: np.random.Generator,
    A: Optional[np.ndarray] = None,
    a: Optional[np.ndarray] = None,
    block: Optional[str] = None
) -> np.ndarray:
    """
    Factorize Q and draw one vector, constrained if A is given.

    :param Q: Precision matrix (dense or sparse)
    :param b: Vector such that the mean is Q^-1 b
    :param rng: Random number generator
    :param A: Optional constraint matrix
    :param a: Constraint target, zeros if omitted
    :param block: Parameter block name for error reports
    :return: One draw of shape (n,)
    """
    factor = CholeskyFactor(Q, block=block)
    if A is None:
        return sample_precision(factor, b, rng)
    if a is None:
        a = np.zeros(np.atleast_2d(A).shape[0])
    return sample_constrained(factor, b, A, a, rng)
