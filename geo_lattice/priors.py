"""
Conjugate priors for the lattice regression model.

The Gibbs sampler expects a priors record with
    tau2_shape, tau2_rate    inverse-gamma prior on each level's variance
    sigma2_shape, sigma2_rate  inverse-gamma prior on the noise variance
    beta_mean, beta_cov      Gaussian prior on the regression coefficients
    rho_a, rho_b             Beta prior on the CAR dependence (only used
                             when rho is estimated)
"""

import numpy as np
from scipy.linalg import cholesky, LinAlgError
from typing import Dict, Optional

from geo_lattice.exceptions import ConfigurationError


def default_priors(n_covariates: int, n_levels: int) -> Dict[str, np.ndarray]:
    """
    Vague conjugate priors.

    :param n_covariates: Number of columns of the covariate matrix
    :param n_levels: Number of resolution levels
    :return: Priors record
    """
    return {
        'tau2_shape': np.full(n_levels, 1.0),
        'tau2_rate': np.full(n_levels, 1.0),
        'sigma2_shape': 0.01,
        'sigma2_rate': 0.01,
        'beta_mean': np.zeros(n_covariates),
        'beta_cov': 1e4 * np.eye(n_covariates),
        'rho_a': 1.0,
        'rho_b': 1.0,
    }


def _positive_scalar(priors: Dict, key: str) -> float:
    value = np.asarray(priors[key], dtype=float)
    if value.ndim != 0 or not np.isfinite(value) or value <= 0:
        raise ConfigurationError(f"Prior '{key}' must be a positive scalar, got {priors[key]}")
    return float(value)


def _positive_vector(priors: Dict, key: str, n: int) -> np.ndarray:
    value = np.atleast_1d(np.asarray(priors[key], dtype=float))
    if value.size == 1:
        value = np.repeat(value, n)
    if value.shape != (n,):
        raise ConfigurationError(f"Prior '{key}' must be a scalar or have {n} values, got shape {value.shape}")
    if np.any(~np.isfinite(value)) or np.any(value <= 0):
        raise ConfigurationError(f"Prior '{key}' must be positive, got {value}")
    return value


def validate_priors(
    priors: Optional[Dict],
    n_covariates: int,
    n_levels: int
) -> Dict[str, np.ndarray]:
    """
    Check a priors record and fill in defaults for missing entries.

    :param priors: User-supplied priors (may be None or partial)
    :param n_covariates: Number of regression coefficients p
    :param n_levels: Number of resolution levels M
    :return: Complete priors record, with per-level tau2 hyperparameters
    :raises ConfigurationError: If any prior is malformed
    """
    merged = default_priors(n_covariates, n_levels)
    if priors is not None:
        unknown = set(priors) - set(merged)
        if unknown:
            raise ConfigurationError(f"Unrecognized prior fields: {sorted(unknown)}")
        merged.update(priors)

    checked = {
        'tau2_shape': _positive_vector(merged, 'tau2_shape', n_levels),
        'tau2_rate': _positive_vector(merged, 'tau2_rate', n_levels),
        'sigma2_shape': _positive_scalar(merged, 'sigma2_shape'),
        'sigma2_rate': _positive_scalar(merged, 'sigma2_rate'),
        'rho_a': _positive_scalar(merged, 'rho_a'),
        'rho_b': _positive_scalar(merged, 'rho_b'),
    }

    beta_mean = np.atleast_1d(np.asarray(merged['beta_mean'], dtype=float))
    if beta_mean.shape != (n_covariates,):
        raise ConfigurationError(
            f"beta_mean must have {n_covariates} values, got shape {beta_mean.shape}"
        )

    beta_cov = np.atleast_2d(np.asarray(merged['beta_cov'], dtype=float))
    if beta_cov.shape != (n_covariates, n_covariates):
        raise ConfigurationError(
            f"beta_cov must be {n_covariates}x{n_covariates}, got shape {beta_cov.shape}"
        )
    if np.any(~np.isfinite(beta_mean)) or np.any(~np.isfinite(beta_cov)):
        raise ConfigurationError("beta prior contains NaN or infinite values")
    if not np.allclose(beta_cov, beta_cov.T):
        raise ConfigurationError("beta_cov must be symmetric")
    try:
        cholesky(beta_cov, lower=True)
    except LinAlgError as e:
        raise ConfigurationError(f"beta_cov must be positive definite: {e}") from e

    checked['beta_mean'] = beta_mean
    checked['beta_cov'] = beta_cov
    return checked
