"""
Sparse precision matrices for the lattice coefficients.

This module builds the conditional autoregressive (CAR) precision of each
knot lattice, assembles the per-level blocks into one block-diagonal
precision over all coefficients, and sets up the sum-to-zero constraint
system that makes the intrinsic (rho = 1) field identifiable.
"""

import itertools

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu
from typing import List, Literal, Sequence, Tuple, Union

from geo_lattice.basis import LatticeLevel
from geo_lattice.exceptions import MatrixError, NumericalError

Neighborhood = Literal["rook", "queen"]


def _neighbor_offsets(dim: int, neighborhood: Neighborhood) -> List[Tuple[int, ...]]:
    """Offsets to one half of the neighbourhood (the other half is the mirror)."""
    if neighborhood == "rook":
        return [tuple(int(i == d) for i in range(dim)) for d in range(dim)]
    if neighborhood == "queen":
        offsets = []
        for off in itertools.product((-1, 0, 1), repeat=dim):
            nonzero = [o for o in off if o != 0]
            # keep offsets whose first nonzero component is positive
            if nonzero and nonzero[0] > 0:
                offsets.append(off)
        return offsets
    raise MatrixError(f"Unknown neighborhood '{neighborhood}', use 'rook' or 'queen'")


def grid_adjacency(
    grid_shape: Sequence[int],
    neighborhood: Neighborhood = "rook"
) -> sparse.csr_matrix:
    """
    Compute the 0/1 adjacency matrix of a regular grid.

    Nodes are numbered in C order over grid_shape, matching
    LatticeLevel.knots.

    Parameters
    ----------
    grid_shape : sequence of int
        Number of nodes along each axis
    neighborhood : {'rook', 'queen'}
        'rook' links nodes one step apart along a single axis (4 neighbours
        in 2-D); 'queen' also links diagonal nodes (8 neighbours in 2-D)

    Returns
    -------
    sparse.csr_matrix
        Symmetric adjacency matrix (n_nodes x n_nodes)
    """
    grid_shape = tuple(int(n) for n in grid_shape)
    if len(grid_shape) == 0 or min(grid_shape) < 1:
        raise MatrixError(f"Invalid grid shape {grid_shape}")

    n_nodes = int(np.prod(grid_shape))
    index = np.arange(n_nodes).reshape(grid_shape)

    rows = []
    cols = []
    for off in _neighbor_offsets(len(grid_shape), neighborhood):
        src = tuple(slice(max(0, -o), n - max(0, o)) for o, n in zip(off, grid_shape))
        dst = tuple(slice(max(0, o), n - max(0, -o)) for o, n in zip(off, grid_shape))
        a = index[src].ravel()
        b = index[dst].ravel()
        rows.extend([a, b])
        cols.extend([b, a])

    rows = np.concatenate(rows)
    cols = np.concatenate(cols)
    data = np.ones(len(rows), dtype=np.float64)

    adjacency = sparse.coo_matrix((data, (rows, cols)), shape=(n_nodes, n_nodes)).tocsr()
    adjacency.sum_duplicates()
    return adjacency


def _check_rho(rho: float) -> float:
    rho = float(rho)
    if not np.isfinite(rho) or rho < 0 or rho > 1:
        raise MatrixError(f"CAR dependence rho must lie in [0, 1], got {rho}")
    return rho


class CARStructure:
    """
    Static CAR ingredients for one lattice.

    The precision for dependence rho is
        Q(rho) = diag(degree) - rho * adjacency
    so the structure is built once and every rho value afterwards costs a
    single sparse linear combination.

    Attributes
    ----------
    grid_shape : tuple
        Lattice shape
    adjacency : sparse.csr_matrix
        0/1 neighbour matrix
    degree : np.ndarray
        Neighbour count of each node
    """

    def __init__(self, grid_shape: Sequence[int], neighborhood: Neighborhood = "rook"):
        self.grid_shape = tuple(int(n) for n in grid_shape)
        self.neighborhood = neighborhood
        self.adjacency = grid_adjacency(self.grid_shape, neighborhood)
        self.degree = np.asarray(self.adjacency.sum(axis=1)).ravel()
        self._diagonal = sparse.diags(self.degree, format='csr')

    @property
    def n_nodes(self) -> int:
        return self.adjacency.shape[0]

    def precision(self, rho: float) -> sparse.csr_matrix:
        """CAR precision matrix for dependence rho."""
        rho = _check_rho(rho)
        return (self._diagonal - rho * self.adjacency).tocsr()

    def quadratic_terms(self, x: np.ndarray) -> Tuple[float, float]:
        """
        Split x^T Q(rho) x into (x^T D x, x^T adjacency x).

        x^T Q(rho) x = first - rho * second for any rho.
        """
        x = np.asarray(x, dtype=float)
        return float(np.dot(self.degree * x, x)), float(x @ (self.adjacency @ x))


def car_precision(
    grid_shape: Sequence[int],
    rho: float,
    neighborhood: Neighborhood = "rook"
) -> sparse.csr_matrix:
    """
    Compute the CAR precision matrix of a lattice.

    Off-diagonal entry (i, j) is -rho when knots i and j are neighbours,
    the diagonal holds neighbour counts. For rho < 1 the matrix is strictly
    diagonally dominant and hence positive definite; for rho = 1 constant
    vectors are in its null space.

    Parameters
    ----------
    grid_shape : sequence of int
        Knots along each axis
    rho : float
        Dependence parameter in [0, 1]
    neighborhood : {'rook', 'queen'}
        Grid neighbourhood

    Returns
    -------
    sparse.csr_matrix
        Precision matrix (n_knots x n_knots)
    """
    return CARStructure(grid_shape, neighborhood).precision(rho)


def broadcast_rho(rho: Union[float, Sequence[float]], n_levels: int) -> np.ndarray:
    """Return rho as a length n_levels vector, validating each entry."""
    rho = np.atleast_1d(np.asarray(rho, dtype=float))
    if rho.size == 1:
        rho = np.repeat(rho, n_levels)
    if rho.shape != (n_levels,):
        raise MatrixError(f"Expected a scalar rho or {n_levels} values, got shape {rho.shape}")
    return np.array([_check_rho(r) for r in rho])


def build_car_structures(
    levels: List[LatticeLevel],
    neighborhood: Neighborhood = "rook"
) -> List[CARStructure]:
    """Build the static CAR structure for every level."""
    return [CARStructure(level.grid_shape, neighborhood) for level in levels]


def build_car_precisions(
    levels: List[LatticeLevel],
    rho: Union[float, Sequence[float]],
    neighborhood: Neighborhood = "rook"
) -> List[sparse.csr_matrix]:
    """
    Compute one CAR precision matrix per level.

    :param levels: Lattices from build_lattice()
    :param rho: Dependence parameter, scalar or one value per level
    :param neighborhood: Grid neighbourhood
    :return: List of sparse precision matrices
    """
    rho = broadcast_rho(rho, len(levels))
    structures = build_car_structures(levels, neighborhood)
    return [s.precision(r) for s, r in zip(structures, rho)]


def assemble_precision(
    precisions: List[sparse.spmatrix],
    scales: Sequence[float]
) -> sparse.csr_matrix:
    """
    Assemble the block-diagonal precision over all levels.

    Block m is scales[m] * precisions[m]. The blocks themselves are reused
    as given.

    Parameters
    ----------
    precisions : list of sparse matrices
        Per-level precision matrices Q_m
    scales : sequence of float
        Positive multipliers, one per level

    Returns
    -------
    sparse.csr_matrix
        Block-diagonal precision (K x K), K the total knot count
    """
    scales = np.asarray(scales, dtype=float)
    if scales.shape != (len(precisions),):
        raise MatrixError(
            f"Expected {len(precisions)} scale values, got shape {scales.shape}"
        )
    if np.any(~np.isfinite(scales)) or np.any(scales <= 0):
        raise MatrixError(f"Scale values must be positive and finite, got {scales}")

    return sparse.block_diag(
        [s * Q for s, Q in zip(scales, precisions)], format='csr'
    )


def sum_to_zero_constraints(level_sizes: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build the per-level sum-to-zero constraint system A x = a.

    :param level_sizes: Number of coefficients in each level
    :return: Tuple of (A, a) with A of shape (n_levels, total) and a = 0
    """
    level_sizes = [int(n) for n in level_sizes]
    if len(level_sizes) == 0 or min(level_sizes) < 1:
        raise MatrixError(f"Invalid level sizes {level_sizes}")

    A = np.zeros((len(level_sizes), sum(level_sizes)))
    start = 0
    for m, n in enumerate(level_sizes):
        A[m, start:start + n] = 1.0
        start += n
    return A, np.zeros(len(level_sizes))


def level_slices(level_sizes: Sequence[int]) -> List[slice]:
    """Slices selecting each level's coefficients from the stacked vector."""
    bounds = np.concatenate([[0], np.cumsum(level_sizes)])
    return [slice(int(lo), int(hi)) for lo, hi in zip(bounds[:-1], bounds[1:])]


def log_det_precision(Q: sparse.spmatrix) -> float:
    """
    Compute log determinant of a sparse symmetric positive definite matrix.

    The factorization uses a symmetric fill-reducing ordering without
    pivoting, so the pivots are those of a Cholesky factorization squared
    and are all positive exactly when Q is positive definite.

    :param Q: Sparse precision matrix
    :return: Log determinant of Q
    :raises NumericalError: If Q is singular or not positive definite
    """
    try:
        lu = splu(
            sparse.csc_matrix(Q),
            permc_spec='MMD_AT_PLUS_A',
            diag_pivot_thresh=0.0,
            options={'SymmetricMode': True}
        )
    except RuntimeError as e:
        raise NumericalError(f"Sparse factorization failed: {e}") from e

    pivots = lu.U.diagonal()
    if np.any(pivots <= 0) or np.any(~np.isfinite(pivots)):
        raise NumericalError("Precision matrix is not positive definite")

    return float(np.sum(np.log(pivots)))


def print_precision_diagnostics(
    levels: List[LatticeLevel],
    basis: List[sparse.spmatrix],
    precisions: List[sparse.spmatrix]
) -> None:
    """Print matrix diagnostics for user information."""
    print("\nMatrix Diagnostics:")

    total_nnz = 0
    for level, W, Q in zip(levels, basis, precisions):
        w_density = W.nnz / (W.shape[0] * W.shape[1]) * 100
        q_density = Q.nnz / (Q.shape[0] * Q.shape[1]) * 100
        print(f"  Level {level.level}: W {W.shape[0]}x{W.shape[1]} ({w_density:.2f}% dense), "
              f"Q {Q.shape[0]}x{Q.shape[1]} ({q_density:.2f}% dense)")
        total_nnz += W.nnz + Q.nnz

    print(f"  Total coefficients: {sum(Q.shape[0] for Q in precisions):,}")
    print(f"  Estimated memory: {total_nnz * 8 / (1024 * 1024):.1f} MB")
