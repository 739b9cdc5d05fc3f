"""
Unit tests for geo_lattice.sampling module.

Tests Gaussian draws in precision form:
- Moments of unconstrained draws
- Exactness of constrained draws
- Constraint and factorization error handling
"""

import pytest
import numpy as np
from scipy import sparse

from geo_lattice.exceptions import ConstraintError, MatrixError, NumericalError, ConfigurationError
from geo_lattice.matrices import assemble_precision, car_precision, sum_to_zero_constraints
from geo_lattice.sampling import (
    CholeskyFactor,
    sample_precision,
    sample_constrained,
    sample_gaussian,
)


class TestCholeskyFactor:
    """Test the precision factor wrapper."""

    def setup_method(self):
        self.Q = np.array([
            [2.0, -0.5, 0.0],
            [-0.5, 1.5, 0.3],
            [0.0, 0.3, 1.0],
        ])

    def test_solve_and_log_det(self):
        """Solves and log determinant match numpy."""
        factor = CholeskyFactor(self.Q)
        b = np.array([1.0, 0.0, -1.0])

        np.testing.assert_allclose(factor.solve(b), np.linalg.solve(self.Q, b))
        assert factor.log_det() == pytest.approx(np.linalg.slogdet(self.Q)[1])
        assert factor.n == 3

    def test_sparse_input(self):
        """Sparse precisions are factored without densifying."""
        factor = CholeskyFactor(sparse.csr_matrix(self.Q))
        b = np.array([1.0, 0.0, -1.0])

        assert factor.is_sparse
        assert not hasattr(factor, 'L')
        np.testing.assert_allclose(factor.solve(b), np.linalg.solve(self.Q, b))
        assert factor.log_det() == pytest.approx(np.linalg.slogdet(self.Q)[1])

    def test_sparse_transpose_solve(self):
        """For sparse Q, u = solve_transpose(z) satisfies u' Q u = z' z."""
        Q = car_precision((6, 5), 0.8) + sparse.eye(30)
        factor = CholeskyFactor(Q)
        Z = np.random.default_rng(0).standard_normal((30, 4))
        U = factor.solve_transpose(Z)

        assert U.shape == (30, 4)
        np.testing.assert_allclose(U.T @ (Q @ U), Z.T @ Z, atol=1e-10)
        np.testing.assert_allclose(factor.solve_transpose(Z[:, 0]), U[:, 0])

    def test_sparse_not_positive_definite(self):
        """An indefinite sparse precision raises NumericalError naming the block."""
        Q = sparse.csc_matrix(np.array([[1.0, 2.0], [2.0, 1.0]]))
        with pytest.raises(NumericalError) as excinfo:
            CholeskyFactor(Q, block='alpha')
        assert excinfo.value.block == 'alpha'

    def test_not_positive_definite(self):
        """An indefinite precision raises NumericalError naming the block."""
        Q = np.array([[1.0, 2.0], [2.0, 1.0]])
        with pytest.raises(NumericalError, match="block=alpha") as excinfo:
            CholeskyFactor(Q, block='alpha')
        assert excinfo.value.block == 'alpha'

    def test_non_finite(self):
        Q = self.Q.copy()
        Q[0, 0] = np.nan
        with pytest.raises(NumericalError):
            CholeskyFactor(Q)

    def test_non_square(self):
        """A non-square precision is a matrix error, dense or sparse."""
        with pytest.raises(MatrixError, match="square"):
            CholeskyFactor(np.ones((2, 3)))
        with pytest.raises(MatrixError, match="square"):
            CholeskyFactor(sparse.csr_matrix(np.ones((3, 2))))


class TestUnconstrainedSampling:
    """Test draws from N(Q^-1 b, Q^-1)."""

    def setup_method(self):
        self.Q = np.array([
            [2.0, -0.5, 0.0],
            [-0.5, 1.5, 0.3],
            [0.0, 0.3, 1.0],
        ])
        self.b = np.array([1.0, 0.0, -1.0])
        self.factor = CholeskyFactor(self.Q)

    def test_moments(self):
        """Empirical mean and covariance match Q^-1 b and Q^-1."""
        rng = np.random.default_rng(42)
        draws = sample_precision(self.factor, self.b, rng, size=40000)
        cov = np.linalg.inv(self.Q)

        assert draws.shape == (40000, 3)
        np.testing.assert_allclose(draws.mean(axis=0), cov @ self.b, atol=0.03)
        np.testing.assert_allclose(np.cov(draws.T), cov, atol=0.03)

    def test_single_draw_shape(self):
        rng = np.random.default_rng(0)
        assert sample_precision(self.factor, self.b, rng).shape == (3,)

    def test_reproducible(self):
        """Identical generators give identical draws."""
        x1 = sample_precision(self.factor, self.b, np.random.default_rng(5), size=4)
        x2 = sample_precision(self.factor, self.b, np.random.default_rng(5), size=4)
        np.testing.assert_array_equal(x1, x2)

    def test_wrong_b_shape(self):
        with pytest.raises(ConstraintError):
            sample_precision(self.factor, np.ones(4), np.random.default_rng(0))


class TestConstrainedSampling:
    """Test draws conditioned on A x = a."""

    def setup_method(self):
        Q1 = car_precision((2, 2), 0.5)
        Q2 = car_precision((5, 1), 0.5)
        self.sizes = [4, 5]
        # coupling between levels, as in the alpha full conditional
        coupling = 0.1 * np.ones((9, 9))
        self.Q = assemble_precision([Q1, Q2], [1.0, 2.0]).toarray() + coupling
        self.b = np.linspace(-1.0, 1.0, 9)
        self.A, self.a = sum_to_zero_constraints(self.sizes)
        self.factor = CholeskyFactor(self.Q)

    def test_constraints_hold(self):
        """Every draw satisfies each level's sum-to-zero constraint."""
        rng = np.random.default_rng(1)
        draws = sample_constrained(self.factor, self.b, self.A, self.a, rng, size=200)

        assert draws.shape == (200, 9)
        np.testing.assert_allclose(draws[:, :4].sum(axis=1), 0.0, atol=1e-10)
        np.testing.assert_allclose(draws[:, 4:].sum(axis=1), 0.0, atol=1e-10)

    def test_nonzero_target(self):
        """Constraints with a nonzero right-hand side are honoured."""
        rng = np.random.default_rng(2)
        a = np.array([1.5, -2.0])
        x = sample_constrained(self.factor, self.b, self.A, a, rng)
        np.testing.assert_allclose(self.A @ x, a, atol=1e-10)

    def test_conditional_mean(self):
        """Draws centre on the conditional mean of the constrained Gaussian."""
        rng = np.random.default_rng(3)
        draws = sample_constrained(self.factor, self.b, self.A, self.a, rng, size=40000)

        Sigma = np.linalg.inv(self.Q)
        mu = Sigma @ self.b
        V = Sigma @ self.A.T
        expected = mu - V @ np.linalg.solve(self.A @ V, self.A @ mu)

        np.testing.assert_allclose(draws.mean(axis=0), expected, atol=0.03)

    def test_conditional_covariance(self):
        """Draws have the conditional covariance Sigma - V (A V)^-1 V'."""
        rng = np.random.default_rng(4)
        draws = sample_constrained(self.factor, self.b, self.A, self.a, rng, size=40000)

        Sigma = np.linalg.inv(self.Q)
        V = Sigma @ self.A.T
        expected = Sigma - V @ np.linalg.solve(self.A @ V, V.T)

        np.testing.assert_allclose(np.cov(draws.T), expected, atol=0.03)

    def test_rank_deficient(self):
        """A duplicated constraint row is rejected."""
        A = np.vstack([self.A, self.A[0]])
        with pytest.raises(ConstraintError, match="rank-deficient"):
            sample_constrained(self.factor, self.b, A, np.zeros(3), np.random.default_rng(0))
        with pytest.raises(ConfigurationError):
            sample_constrained(self.factor, self.b, A, np.zeros(3), np.random.default_rng(0))

    @pytest.mark.parametrize("A, a", [
        (np.ones((1, 8)), np.zeros(1)),
        (np.ones((1, 9)), np.zeros(2)),
        (np.full((1, 9), np.nan), np.zeros(1)),
    ])
    def test_malformed_system(self, A, a):
        with pytest.raises(ConstraintError):
            sample_constrained(self.factor, self.b, A, a, np.random.default_rng(0))


class TestSampleGaussian:
    """Test the factorize-and-draw entry point."""

    def test_constrained_and_unconstrained(self):
        Q = sparse.csr_matrix(car_precision((3, 3), 0.9) + sparse.eye(9))
        b = np.arange(9.0)
        A, _ = sum_to_zero_constraints([9])

        x = sample_gaussian(Q, b, np.random.default_rng(0), A=A)
        assert x.sum() == pytest.approx(0.0, abs=1e-10)

        y = sample_gaussian(Q, b, np.random.default_rng(0))
        assert y.shape == (9,)

    def test_failure_reports_block(self):
        Q = -np.eye(3)
        with pytest.raises(NumericalError) as excinfo:
            sample_gaussian(Q, np.zeros(3), np.random.default_rng(0), block='beta')
        assert excinfo.value.block == 'beta'


class TestSparseSampling:
    """Test draws when the precision is factored sparsely."""

    def setup_method(self):
        Q1 = car_precision((3, 3), 0.7)
        Q2 = car_precision((4, 3), 0.7)
        self.Q = (assemble_precision([Q1, Q2], [1.0, 2.0]) + 0.5 * sparse.eye(21)).tocsr()
        self.b = np.linspace(-1.0, 1.0, 21)
        self.A, self.a = sum_to_zero_constraints([9, 12])
        self.factor = CholeskyFactor(self.Q)

    def test_matches_dense_factor(self):
        """Sparse and dense factors agree on solves and log determinants."""
        dense = CholeskyFactor(self.Q.toarray())

        np.testing.assert_allclose(self.factor.solve(self.b), dense.solve(self.b))
        assert self.factor.log_det() == pytest.approx(dense.log_det())

    def test_moments(self):
        """Sparse draws have mean Q^-1 b and covariance Q^-1."""
        draws = sample_precision(self.factor, self.b, np.random.default_rng(6), size=40000)
        cov = np.linalg.inv(self.Q.toarray())

        np.testing.assert_allclose(draws.mean(axis=0), cov @ self.b, atol=0.03)
        np.testing.assert_allclose(np.cov(draws.T), cov, atol=0.05)

    def test_constraints_hold(self):
        draws = sample_constrained(self.factor, self.b, self.A, self.a,
                                   np.random.default_rng(7), size=100)
        np.testing.assert_allclose(draws @ self.A.T, 0.0, atol=1e-10)
