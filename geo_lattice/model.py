"""
Multi-resolution lattice kriging with a Gibbs sampler.

This module provides the user-facing model class. It builds the static
structures once (knot lattices, Wendland basis, CAR precisions, constraint
system), runs one or more independent Gibbs chains and summarises the
retained draws.
"""

import copy
from concurrent.futures import ProcessPoolExecutor

import numpy as np
from scipy import sparse
from typing import Dict, List, Optional, Sequence, Union

from .basis import LatticeLevel, build_lattice, compute_basis_matrices
from .coords import preprocess_coords, project_coordinates, validate_coords
from .exceptions import ConfigurationError, GeoLatticeError
from .gibbs import run_chain, validate_sampler_config
from .matrices import (
    Neighborhood,
    broadcast_rho,
    build_car_structures,
    print_precision_diagnostics,
)
from .priors import validate_priors

_SAMPLED = ('beta', 'alpha', 'tau2', 'sigma2', 'rho')


def _run_chain_task(chain_id, seed_seq, y, X, W, structures, priors, config, rho, initial, verbose):
    """Run one chain, returning (chain_id, samples, error)."""
    rng = np.random.default_rng(seed_seq)
    try:
        samples = run_chain(
            y, X, W, copy.deepcopy(structures), priors, config, rng, rho,
            initial=initial, chain_id=chain_id, verbose=verbose
        )
    except GeoLatticeError as err:
        return chain_id, None, err
    return chain_id, samples, None


class LatticeKrig:
    """
    Bayesian multi-resolution spatial regression.

        y = X beta + sum_m W_m alpha_m + eps

    Examples
    --------
    >>> model = LatticeKrig(coords, y, n_levels=3, nc=10)
    >>> results = model.sample(n_adapt=500, n_mcmc=1000, seed=1)
    >>> field = model.spatial_field(results)
    >>> print(model.summary(results)['beta']['mean'])
    """

    def __init__(
        self,
        coords: np.ndarray,
        y: np.ndarray,
        X: Optional[np.ndarray] = None,
        n_levels: int = 3,
        nc: Optional[int] = None,
        nc_fine: Optional[int] = None,
        overlap: float = 2.5,
        buffer: Optional[int] = None,
        refinement: float = 2.0,
        rho: Union[float, Sequence[float]] = 0.9,
        neighborhood: Neighborhood = "rook",
        project: bool = False,
        verbose: bool = True
    ) -> None:
        """Validate the data and build every static structure.

        :param coords: Site coordinates (n_obs, 2) or (n_obs, 3)
        :param y: Responses (n_obs,)
        :param X: Covariates (n_obs, p); defaults to an intercept column
        :param n_levels: Number of resolution levels
        :param nc: Knots along the longest side at the coarsest level
            (defaults to 10 when nc_fine is not given either)
        :param nc_fine: Knots along the longest side at the finest level
        :param overlap: Support radius in units of knot spacing
        :param buffer: Knots added beyond the site bounding box on each side
        :param refinement: Spacing ratio between consecutive levels
        :param rho: CAR dependence, scalar or one per level; fixed unless
            estimate_rho is requested at sampling time
        :param neighborhood: 'rook' or 'queen' lattice neighbourhood
        :param project: Project lon/lat coordinates before building lattices
        :param verbose: Print progress
        """
        self.verbose = verbose

        self.coords, self.proj_info = preprocess_coords(coords, project=project, verbose=verbose)
        n_obs = len(self.coords)

        y = np.asarray(y, dtype=float)
        if y.ndim != 1 or len(y) != n_obs:
            raise ConfigurationError(f"Expected y of shape ({n_obs},), got {y.shape}")
        if np.any(~np.isfinite(y)):
            raise ConfigurationError("y contains NaN or infinite values")
        self.y = y

        if X is None:
            X = np.ones((n_obs, 1))
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X[:, None]
        if X.ndim != 2 or X.shape[0] != n_obs:
            raise ConfigurationError(f"Expected X with {n_obs} rows, got shape {X.shape}")
        if np.any(~np.isfinite(X)):
            raise ConfigurationError("X contains NaN or infinite values")
        self.X = X

        if nc is None and nc_fine is None:
            nc = 10

        self.levels: List[LatticeLevel] = build_lattice(
            self.coords, n_levels, nc=nc, nc_fine=nc_fine,
            overlap=overlap, buffer=buffer, refinement=refinement
        )
        self.rho = broadcast_rho(rho, len(self.levels))
        self.neighborhood = neighborhood

        if verbose:
            print(f"Building {len(self.levels)}-level Wendland basis for {n_obs:,} sites:")
        self.basis = compute_basis_matrices(self.coords, self.levels, verbose=verbose)
        self.W = sparse.hstack(self.basis, format='csr')

        self.structures = build_car_structures(self.levels, neighborhood)
        if verbose:
            precisions = [s.precision(r) for s, r in zip(self.structures, self.rho)]
            print_precision_diagnostics(self.levels, self.basis, precisions)

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    @property
    def n_knots(self) -> List[int]:
        return [level.n_knots for level in self.levels]

    def get_lattice_info(self) -> List[Dict]:
        """Per-level lattice and basis information.

        :return: One dict per level
        """
        info = []
        for level, W in zip(self.levels, self.basis):
            info.append({
                'level': level.level,
                'grid_shape': level.grid_shape,
                'n_knots': level.n_knots,
                'spacing': level.spacing,
                'radius': level.radius,
                'basis_nnz': W.nnz,
                'basis_per_site': W.nnz / W.shape[0],
            })
        return info

    def sample(
        self,
        n_adapt: int = 500,
        n_mcmc: int = 1000,
        thin: int = 1,
        priors: Optional[Dict] = None,
        estimate_rho: bool = False,
        seed: Optional[int] = None,
        n_chains: int = 1,
        n_workers: int = 1,
        message_interval: int = 100,
        initial: Optional[Dict] = None,
        **options
    ) -> Dict:
        """Run independent Gibbs chains and collect the retained draws.

        :param n_adapt: Warm-up iterations (discarded, used to tune rho proposals)
        :param n_mcmc: Post warm-up iterations
        :param thin: Keep every thin-th post warm-up iteration
        :param priors: Priors record; missing fields use default_priors()
        :param estimate_rho: Sample the CAR dependence instead of fixing it
        :param seed: Seed for the chains' random number generators
        :param n_chains: Number of independent chains
        :param n_workers: Worker processes used to run chains in parallel
        :param message_interval: Print progress every this many iterations (0 disables)
        :param initial: Starting values shared by every chain
        :param options: Further sampler options (rho_proposal_sd,
            target_acceptance, adapt_interval)
        :return: Results dict with retained draws and static structures
        """
        config = validate_sampler_config(
            n_adapt=n_adapt, n_mcmc=n_mcmc, thin=thin,
            message_interval=message_interval, estimate_rho=estimate_rho,
            **options
        )
        priors = validate_priors(priors, self.X.shape[1], self.n_levels)

        for name, value in (('n_chains', n_chains), ('n_workers', n_workers)):
            if isinstance(value, bool) or int(value) != value or value < 1:
                raise ConfigurationError(f"'{name}' must be a positive integer, got {value}")
        n_chains = int(n_chains)
        n_workers = int(n_workers)

        seeds = np.random.SeedSequence(seed).spawn(n_chains)
        common = (self.y, self.X, self.W, self.structures, priors, config,
                  self.rho, initial, self.verbose)

        if self.verbose:
            print(f"Running {n_chains} chain(s): {config['n_adapt']} warm-up + "
                  f"{config['n_mcmc']} iterations, thin = {config['thin']}")

        if n_workers > 1 and n_chains > 1:
            with ProcessPoolExecutor(max_workers=min(n_workers, n_chains)) as pool:
                futures = [pool.submit(_run_chain_task, c, s, *common)
                           for c, s in enumerate(seeds)]
                outcomes = [f.result() for f in futures]
        else:
            outcomes = [_run_chain_task(c, s, *common) for c, s in enumerate(seeds)]

        completed = [(c, samples) for c, samples, err in outcomes if err is None]
        failed = [(c, err) for c, _, err in outcomes if err is not None]

        if not completed:
            raise failed[0][1]
        for c, err in failed:
            if self.verbose:
                print(f"  Chain {c} failed: {err}")

        results = {}
        for key in _SAMPLED:
            if completed[0][1][key] is None:
                results[key] = None
            else:
                results[key] = np.concatenate([s[key] for _, s in completed], axis=0)
        results['chain'] = np.concatenate(
            [np.full(len(s['sigma2']), c) for c, s in completed]
        )
        if estimate_rho:
            results['acceptance_rate'] = np.vstack([s['acceptance_rate'] for _, s in completed])
            results['proposal_sd'] = np.vstack([s['proposal_sd'] for _, s in completed])
        else:
            results['acceptance_rate'] = None
            results['proposal_sd'] = None

        results['failed_chains'] = [(c, str(err)) for c, err in failed]
        results['n_chains'] = n_chains
        results['levels'] = self.levels
        results['basis'] = self.basis
        results['n_knots'] = self.n_knots
        results['config'] = config
        results['priors'] = priors

        if self.verbose:
            print(f"Sampling complete: {len(results['sigma2'])} draws retained "
                  f"from {len(completed)} chain(s)")

        return results

    def _basis_at(self, results: Dict, coords: Optional[np.ndarray]) -> sparse.csr_matrix:
        if coords is None:
            return self.W
        coords = validate_coords(coords)
        if self.proj_info.get('proj4_string'):
            # lattices live in the projected frame of the training sites
            coords = project_coordinates(coords, self.proj_info['proj4_string'])
            if self.proj_info['coordinate_units'] == 'kilometers':
                coords = coords * 0.001
        levels = results.get('levels', self.levels)
        return sparse.hstack(compute_basis_matrices(coords, levels), format='csr')

    def spatial_field(self, results: Dict, coords: Optional[np.ndarray] = None) -> np.ndarray:
        """Posterior mean of the spatial process W alpha.

        :param results: Output of sample()
        :param coords: Locations to evaluate at; the sites when omitted
        :return: Posterior mean field at each location
        """
        W = self._basis_at(results, coords)
        return W @ results['alpha'].mean(axis=0)

    def predict(
        self,
        results: Dict,
        coords: np.ndarray,
        X: Optional[np.ndarray] = None
    ) -> Dict[str, np.ndarray]:
        """Posterior mean and sd of X beta + W alpha at new locations.

        :param results: Output of sample()
        :param coords: New locations
        :param X: Covariates at the new locations; may be omitted only for
            an intercept-only model
        :return: Dict with 'mean', 'sd' and 'field' (posterior mean of W alpha)
        """
        W = self._basis_at(results, coords)
        n_new = W.shape[0]
        p = self.X.shape[1]

        if X is None:
            if p != 1 or not np.allclose(self.X, 1.0):
                raise ConfigurationError("X is required for prediction with covariates")
            X = np.ones((n_new, 1))
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X[:, None]
        if X.shape != (n_new, p):
            raise ConfigurationError(f"Expected X of shape ({n_new}, {p}), got {X.shape}")

        field_draws = (W @ results['alpha'].T).T
        draws = results['beta'] @ X.T + field_draws
        return {
            'mean': draws.mean(axis=0),
            'sd': draws.std(axis=0),
            'field': field_draws.mean(axis=0),
        }

    def summary(self, results: Dict) -> Dict[str, Dict[str, np.ndarray]]:
        """Posterior means, sds and 95% intervals of the scalar parameters.

        :param results: Output of sample()
        :return: Dict keyed by parameter name
        """
        report = {}
        for key in ('beta', 'tau2', 'sigma2', 'rho'):
            draws = results.get(key)
            if draws is None:
                continue
            report[key] = {
                'mean': draws.mean(axis=0),
                'sd': draws.std(axis=0),
                'lower': np.percentile(draws, 2.5, axis=0),
                'upper': np.percentile(draws, 97.5, axis=0),
            }
        return report
