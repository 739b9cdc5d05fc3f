"""
Gibbs sampler for the multi-resolution lattice regression model.

    y = X beta + W alpha + eps,   eps ~ N(0, sigma2 I)
    alpha_m ~ N(0, (Q_m(rho_m) / tau2_m)^-1),  1' alpha_m = 0

Each iteration draws, in order, beta | rest, alpha | rest (with the
per-level sum-to-zero constraint), tau2 | rest, sigma2 | rest and, when
requested, rho | rest with an adaptive random-walk Metropolis step on the
logit scale. All randomness flows through one numpy Generator.
"""

import numpy as np
from scipy import sparse
from scipy.special import expit, logit
from typing import Dict, List, Optional

from geo_lattice.exceptions import ConfigurationError, NumericalError
from geo_lattice.matrices import (
    CARStructure,
    assemble_precision,
    broadcast_rho,
    level_slices,
    log_det_precision,
    sum_to_zero_constraints,
)
from geo_lattice.sampling import sample_gaussian


_SAMPLER_DEFAULTS = {
    'n_adapt': 500,
    'n_mcmc': 1000,
    'thin': 1,
    'message_interval': 100,
    'estimate_rho': False,
    'rho_proposal_sd': 0.5,
    'target_acceptance': 0.44,
    'adapt_interval': 50,
}


def _check_int(config: Dict, key: str, minimum: int) -> None:
    value = config[key]
    try:
        valid = not isinstance(value, bool) and int(value) == value and value >= minimum
    except (TypeError, ValueError):
        valid = False
    if not valid:
        raise ConfigurationError(f"'{key}' must be an integer >= {minimum}, got {value}")
    config[key] = int(value)


def validate_sampler_config(**options) -> Dict:
    """
    Build the sampler configuration from keyword options.

    :param options: Any of n_adapt, n_mcmc, thin, message_interval,
        estimate_rho, rho_proposal_sd, target_acceptance, adapt_interval
    :return: Complete configuration dict
    :raises ConfigurationError: For unknown options or invalid values
    """
    unknown = set(options) - set(_SAMPLER_DEFAULTS)
    if unknown:
        raise ConfigurationError(f"Unrecognized sampler options: {sorted(unknown)}")

    config = dict(_SAMPLER_DEFAULTS)
    config.update(options)

    _check_int(config, 'n_adapt', 0)
    _check_int(config, 'n_mcmc', 1)
    _check_int(config, 'thin', 1)
    _check_int(config, 'message_interval', 0)
    _check_int(config, 'adapt_interval', 1)

    if config['thin'] > config['n_mcmc']:
        raise ConfigurationError(
            f"thin ({config['thin']}) exceeds n_mcmc ({config['n_mcmc']}), no samples would be kept"
        )
    if not 0 < config['target_acceptance'] < 1:
        raise ConfigurationError(
            f"target_acceptance must lie in (0, 1), got {config['target_acceptance']}"
        )
    if not config['rho_proposal_sd'] > 0:
        raise ConfigurationError(
            f"rho_proposal_sd must be positive, got {config['rho_proposal_sd']}"
        )
    config['estimate_rho'] = bool(config['estimate_rho'])

    return config


class GibbsProblem:
    """
    Data and static structures shared by every iteration of a chain.

    Cross products and the constraint system are computed once here; the
    CAR structures are never modified.
    """

    def __init__(
        self,
        y: np.ndarray,
        X: np.ndarray,
        W: sparse.spmatrix,
        structures: List[CARStructure],
        priors: Dict
    ):
        self.y = np.asarray(y, dtype=float)
        self.X = np.asarray(X, dtype=float)
        self.W = sparse.csr_matrix(W)
        self.structures = structures
        self.priors = priors

        self.level_sizes = [s.n_nodes for s in structures]
        if self.W.shape != (len(self.y), sum(self.level_sizes)):
            raise ConfigurationError(
                f"Basis matrix has shape {self.W.shape}, expected "
                f"({len(self.y)}, {sum(self.level_sizes)})"
            )
        if self.X.shape[0] != len(self.y):
            raise ConfigurationError(
                f"Covariate matrix has {self.X.shape[0]} rows, expected {len(self.y)}"
            )

        self.slices = level_slices(self.level_sizes)
        self.A, self.a = sum_to_zero_constraints(self.level_sizes)

        self.XtX = self.X.T @ self.X
        self.WtW = (self.W.T @ self.W).tocsr()
        self.beta_prior_precision = np.linalg.inv(priors['beta_cov'])
        self.beta_prior_term = self.beta_prior_precision @ priors['beta_mean']

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_levels(self) -> int:
        return len(self.structures)


class GibbsState:
    """
    Current values of all model parameters.

    Attributes
    ----------
    beta : np.ndarray
        Regression coefficients (p,)
    alpha : np.ndarray
        Stacked basis coefficients (K,)
    tau2 : np.ndarray
        Per-level variance scales (M,)
    sigma2 : float
        Noise variance
    rho : np.ndarray
        Per-level CAR dependence (M,)
    precisions : list of sparse matrices
        Q_m(rho_m) for the current rho
    log_dets : list of float, optional
        log|Q_m(rho_m)|, filled on the first rho update
    """

    def __init__(self, beta, alpha, tau2, sigma2, rho, precisions, log_dets=None):
        self.beta = beta
        self.alpha = alpha
        self.tau2 = tau2
        self.sigma2 = sigma2
        self.rho = rho
        self.precisions = precisions
        self.log_dets = log_dets


def initial_state(
    problem: GibbsProblem,
    rho,
    initial: Optional[Dict] = None
) -> GibbsState:
    """
    Starting values for a chain.

    beta starts at the least-squares fit, sigma2 at the variance of its
    residuals, tau2 at one and alpha at zero. Entries of `initial` (any of
    beta, alpha, tau2, sigma2, rho) override these.

    :param problem: Chain data
    :param rho: CAR dependence, scalar or one per level
    :param initial: Optional user-supplied starting values
    :return: Initial state
    """
    initial = dict(initial or {})
    unknown = set(initial) - {'beta', 'alpha', 'tau2', 'sigma2', 'rho'}
    if unknown:
        raise ConfigurationError(f"Unrecognized initial values: {sorted(unknown)}")

    p = problem.X.shape[1]
    K = sum(problem.level_sizes)
    M = problem.n_levels

    beta_ls = np.linalg.lstsq(problem.X, problem.y, rcond=None)[0]
    resid_var = float(np.var(problem.y - problem.X @ beta_ls))

    beta = np.asarray(initial.get('beta', beta_ls), dtype=float)
    alpha = np.asarray(initial.get('alpha', np.zeros(K)), dtype=float)
    tau2 = np.atleast_1d(np.asarray(initial.get('tau2', np.ones(M)), dtype=float))
    sigma2 = float(initial.get('sigma2', resid_var if resid_var > 0 else 1.0))
    rho = broadcast_rho(initial.get('rho', rho), M)

    if tau2.size == 1:
        tau2 = np.repeat(tau2, M)
    if beta.shape != (p,):
        raise ConfigurationError(f"Initial beta must have {p} values, got shape {beta.shape}")
    if alpha.shape != (K,):
        raise ConfigurationError(f"Initial alpha must have {K} values, got shape {alpha.shape}")
    if tau2.shape != (M,) or np.any(tau2 <= 0) or np.any(~np.isfinite(tau2)):
        raise ConfigurationError(f"Initial tau2 must be {M} positive values, got {tau2}")
    if not np.isfinite(sigma2) or sigma2 <= 0:
        raise ConfigurationError(f"Initial sigma2 must be positive, got {sigma2}")
    if np.any(~np.isfinite(beta)) or np.any(~np.isfinite(alpha)):
        raise ConfigurationError("Initial values contain NaN or infinite entries")

    precisions = [s.precision(r) for s, r in zip(problem.structures, rho)]
    return GibbsState(beta.copy(), alpha.copy(), tau2.copy(), sigma2, rho, precisions)


def update_beta(problem: GibbsProblem, state: GibbsState, rng: np.random.Generator) -> None:
    """Draw beta from its Gaussian full conditional."""
    resid = problem.y - problem.W @ state.alpha
    precision = problem.beta_prior_precision + problem.XtX / state.sigma2
    b = problem.beta_prior_term + problem.X.T @ resid / state.sigma2
    state.beta = sample_gaussian(precision, b, rng, block='beta')


def update_alpha(problem: GibbsProblem, state: GibbsState, rng: np.random.Generator) -> None:
    """Draw alpha from its Gaussian full conditional under the sum-to-zero constraints."""
    Q_tau = assemble_precision(state.precisions, 1.0 / state.tau2)
    precision = Q_tau + problem.WtW / state.sigma2
    b = problem.W.T @ (problem.y - problem.X @ state.beta) / state.sigma2
    state.alpha = sample_gaussian(
        precision, b, rng, A=problem.A, a=problem.a, block='alpha'
    )


def update_tau2(problem: GibbsProblem, state: GibbsState, rng: np.random.Generator) -> None:
    """Draw each level's variance scale from its inverse-gamma full conditional."""
    shape0 = problem.priors['tau2_shape']
    rate0 = problem.priors['tau2_rate']
    tau2 = np.empty(problem.n_levels)
    for m, sl in enumerate(problem.slices):
        alpha_m = state.alpha[sl]
        quad = max(float(alpha_m @ (state.precisions[m] @ alpha_m)), 0.0)
        shape = shape0[m] + 0.5 * len(alpha_m)
        rate = rate0[m] + 0.5 * quad
        tau2[m] = 1.0 / rng.gamma(shape, 1.0 / rate)
    state.tau2 = tau2


def update_sigma2(problem: GibbsProblem, state: GibbsState, rng: np.random.Generator) -> None:
    """Draw the noise variance from its inverse-gamma full conditional."""
    resid = problem.y - problem.X @ state.beta - problem.W @ state.alpha
    shape = problem.priors['sigma2_shape'] + 0.5 * problem.n_obs
    rate = problem.priors['sigma2_rate'] + 0.5 * float(resid @ resid)
    state.sigma2 = 1.0 / rng.gamma(shape, 1.0 / rate)


class RhoProposal:
    """
    Random-walk proposal scales for logit(rho), one per level.

    During warm-up the scale of each level is multiplied by
    exp(+-min(0.1, 1/sqrt(batch))) after every batch of adapt_interval
    iterations, up when the batch acceptance rate exceeds the target and
    down otherwise.
    """

    def __init__(self, n_levels: int, sd: float, target: float, interval: int):
        self.sd = np.full(n_levels, float(sd))
        self.target = target
        self.interval = interval
        self.n_batches = 0
        self._batch_accepts = np.zeros(n_levels)
        self._batch_count = 0
        self.accepts = np.zeros(n_levels)
        self.attempts = 0

    def record(self, accepted: np.ndarray) -> None:
        self._batch_accepts += accepted
        self._batch_count += 1
        self.accepts += accepted
        self.attempts += 1

    def adapt(self) -> None:
        if self._batch_count < self.interval:
            return
        self.n_batches += 1
        step = min(0.1, 1.0 / np.sqrt(self.n_batches))
        rate = self._batch_accepts / self._batch_count
        self.sd *= np.where(rate > self.target, np.exp(step), np.exp(-step))
        self._batch_accepts[:] = 0
        self._batch_count = 0

    def reset_counts(self) -> None:
        self.accepts[:] = 0
        self.attempts = 0

    def acceptance_rate(self) -> np.ndarray:
        if self.attempts == 0:
            return np.full(len(self.sd), np.nan)
        return self.accepts / self.attempts


def rho_log_target(
    structure: CARStructure,
    rho: float,
    alpha_m: np.ndarray,
    tau2_m: float,
    rho_a: float,
    rho_b: float,
    log_det: Optional[float] = None
) -> float:
    """
    Log full conditional of logit(rho) for one level, up to a constant.

    Includes the Beta(rho_a, rho_b) prior and the Jacobian rho (1 - rho)
    of the logit transform.
    """
    if log_det is None:
        log_det = log_det_precision(structure.precision(rho))
    diag_term, adj_term = structure.quadratic_terms(alpha_m)
    quad = diag_term - rho * adj_term
    return (0.5 * log_det - 0.5 * quad / tau2_m
            + rho_a * np.log(rho) + rho_b * np.log1p(-rho))


def update_rho(
    problem: GibbsProblem,
    state: GibbsState,
    rng: np.random.Generator,
    proposal: RhoProposal
) -> None:
    """Metropolis update of each level's CAR dependence on the logit scale."""
    rho_a = problem.priors['rho_a']
    rho_b = problem.priors['rho_b']

    try:
        if state.log_dets is None:
            state.log_dets = [log_det_precision(Q) for Q in state.precisions]
        accepted = _rho_sweep(problem, state, rng, proposal, rho_a, rho_b)
    except NumericalError as err:
        raise NumericalError(err.base_message, block='rho') from err

    proposal.record(accepted)


def _rho_sweep(problem, state, rng, proposal, rho_a, rho_b):
    accepted = np.zeros(problem.n_levels)
    for m, (structure, sl) in enumerate(zip(problem.structures, problem.slices)):
        z = rng.standard_normal()
        log_u = np.log(rng.uniform())

        rho_cur = state.rho[m]
        rho_new = float(expit(logit(rho_cur) + proposal.sd[m] * z))
        if not 0.0 < rho_new < 1.0:
            continue

        alpha_m = state.alpha[sl]
        log_det_new = log_det_precision(structure.precision(rho_new))
        current = rho_log_target(structure, rho_cur, alpha_m, state.tau2[m],
                                 rho_a, rho_b, log_det=state.log_dets[m])
        proposed = rho_log_target(structure, rho_new, alpha_m, state.tau2[m],
                                  rho_a, rho_b, log_det=log_det_new)

        if log_u < proposed - current:
            state.rho[m] = rho_new
            state.precisions[m] = structure.precision(rho_new)
            state.log_dets[m] = log_det_new
            accepted[m] = 1.0
    return accepted


def run_chain(
    y: np.ndarray,
    X: np.ndarray,
    W: sparse.spmatrix,
    structures: List[CARStructure],
    priors: Dict,
    config: Dict,
    rng: np.random.Generator,
    rho,
    initial: Optional[Dict] = None,
    chain_id: int = 0,
    verbose: bool = True
) -> Dict[str, np.ndarray]:
    """
    Run one Gibbs chain for n_adapt + n_mcmc iterations.

    Parameters
    ----------
    y : np.ndarray
        Responses (n_obs,)
    X : np.ndarray
        Covariates (n_obs, p)
    W : sparse matrix
        Stacked basis matrix (n_obs, K)
    structures : list of CARStructure
        One per level, in the column order of W
    priors : Dict
        Validated priors record
    config : Dict
        Validated sampler configuration
    rng : np.random.Generator
        Generator owned by this chain
    rho : float or array
        CAR dependence, fixed or starting value when estimated
    initial : Dict, optional
        Starting values overriding the defaults
    chain_id : int
        Label used in progress messages
    verbose : bool
        Print progress every message_interval iterations

    Returns
    -------
    Dict with retained draws: beta (S, p), alpha (S, K), tau2 (S, M),
    sigma2 (S,), rho (S, M) or None, plus acceptance_rate and proposal_sd
    for rho (None when rho is fixed)
    """
    problem = GibbsProblem(y, X, W, structures, priors)
    state = initial_state(problem, rho, initial)
    if config['estimate_rho'] and np.any((state.rho <= 0) | (state.rho >= 1)):
        raise ConfigurationError(
            f"Estimating rho requires starting values strictly inside (0, 1), got {state.rho}"
        )

    n_adapt = config['n_adapt']
    n_mcmc = config['n_mcmc']
    thin = config['thin']
    estimate_rho = config['estimate_rho']
    message_interval = config['message_interval'] if verbose else 0
    n_total = n_adapt + n_mcmc
    n_keep = n_mcmc // thin

    p = problem.X.shape[1]
    K = sum(problem.level_sizes)
    M = problem.n_levels

    samples = {
        'beta': np.empty((n_keep, p)),
        'alpha': np.empty((n_keep, K)),
        'tau2': np.empty((n_keep, M)),
        'sigma2': np.empty(n_keep),
        'rho': np.empty((n_keep, M)) if estimate_rho else None,
    }

    proposal = None
    if estimate_rho:
        proposal = RhoProposal(M, config['rho_proposal_sd'],
                               config['target_acceptance'], config['adapt_interval'])

    keep = 0
    for iteration in range(1, n_total + 1):
        try:
            update_beta(problem, state, rng)
            update_alpha(problem, state, rng)
            update_tau2(problem, state, rng)
            update_sigma2(problem, state, rng)
            if estimate_rho:
                update_rho(problem, state, rng, proposal)
        except NumericalError as err:
            raise NumericalError(err.base_message, block=err.block, iteration=iteration) from err

        if estimate_rho and iteration <= n_adapt:
            proposal.adapt()
            if iteration == n_adapt:
                proposal.reset_counts()

        if iteration > n_adapt and (iteration - n_adapt) % thin == 0:
            samples['beta'][keep] = state.beta
            samples['alpha'][keep] = state.alpha
            samples['tau2'][keep] = state.tau2
            samples['sigma2'][keep] = state.sigma2
            if estimate_rho:
                samples['rho'][keep] = state.rho
            keep += 1

        if message_interval and iteration % message_interval == 0:
            phase = "warm-up" if iteration <= n_adapt else "sampling"
            print(f"  Chain {chain_id}: iteration {iteration}/{n_total} ({phase}), "
                  f"sigma2 = {state.sigma2:.4g}")

    samples['acceptance_rate'] = proposal.acceptance_rate() if estimate_rho else None
    samples['proposal_sd'] = proposal.sd.copy() if estimate_rho else None
    return samples
