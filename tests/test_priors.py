"""
Unit tests for geo_lattice.priors module.
"""

import pytest
import numpy as np

from geo_lattice.exceptions import ConfigurationError
from geo_lattice.priors import default_priors, validate_priors


class TestDefaultPriors:
    """Test the vague default priors."""

    def test_shapes(self):
        priors = default_priors(n_covariates=3, n_levels=2)

        assert priors['tau2_shape'].shape == (2,)
        assert priors['tau2_rate'].shape == (2,)
        assert priors['beta_mean'].shape == (3,)
        assert priors['beta_cov'].shape == (3, 3)
        assert priors['sigma2_shape'] > 0
        assert priors['rho_a'] == priors['rho_b'] == 1.0

    def test_defaults_validate(self):
        """Defaults pass validation unchanged."""
        checked = validate_priors(None, 2, 3)
        expected = default_priors(2, 3)
        for key, value in expected.items():
            np.testing.assert_array_equal(checked[key], value)


class TestValidatePriors:
    """Test merging and checking of user priors."""

    def test_partial_override(self):
        """User entries replace defaults, other fields are filled in."""
        checked = validate_priors({'sigma2_shape': 2.0, 'sigma2_rate': 0.5}, 1, 2)

        assert checked['sigma2_shape'] == 2.0
        assert checked['sigma2_rate'] == 0.5
        np.testing.assert_array_equal(checked['tau2_shape'], [1.0, 1.0])

    def test_scalar_tau2_broadcast(self):
        """A scalar tau2 hyperparameter applies to every level."""
        checked = validate_priors({'tau2_shape': 3.0, 'tau2_rate': [1.0, 2.0, 4.0]}, 1, 3)

        np.testing.assert_array_equal(checked['tau2_shape'], [3.0, 3.0, 3.0])
        np.testing.assert_array_equal(checked['tau2_rate'], [1.0, 2.0, 4.0])

    def test_beta_prior(self):
        checked = validate_priors({'beta_mean': [1.0, -1.0], 'beta_cov': np.diag([2.0, 3.0])}, 2, 1)

        np.testing.assert_array_equal(checked['beta_mean'], [1.0, -1.0])
        np.testing.assert_array_equal(checked['beta_cov'], np.diag([2.0, 3.0]))

    def test_unknown_field(self):
        with pytest.raises(ConfigurationError, match="Unrecognized prior"):
            validate_priors({'kappa': 1.0}, 1, 1)

    @pytest.mark.parametrize("priors, match", [
        ({'sigma2_shape': -1.0}, "sigma2_shape"),
        ({'sigma2_rate': 0.0}, "sigma2_rate"),
        ({'rho_a': np.nan}, "rho_a"),
        ({'tau2_rate': [1.0, -1.0]}, "tau2_rate"),
        ({'tau2_shape': [1.0, 1.0, 1.0]}, "tau2_shape"),
        ({'beta_mean': [0.0, 0.0, 0.0]}, "beta_mean"),
        ({'beta_cov': np.eye(3)}, "beta_cov"),
        ({'beta_cov': [[1.0, 0.5], [0.0, 1.0]]}, "symmetric"),
        ({'beta_cov': [[1.0, 2.0], [2.0, 1.0]]}, "positive definite"),
    ])
    def test_invalid_priors(self, priors, match):
        """Malformed priors raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match=match):
            validate_priors(priors, n_covariates=2, n_levels=2)
