"""
Multi-resolution Wendland basis construction.

Each resolution level owns a regular lattice of knots covering the site
bounding box plus a buffer, and a compactly supported Wendland function
centred at every knot. The basis matrix of a level maps knot coefficients
to site values and is sparse because each site only sees the knots within
the support radius.
"""

import numpy as np
from scipy import sparse
from scipy.spatial import KDTree
from typing import List, Optional
import warnings

from geo_lattice.exceptions import BasisError
from geo_lattice.coords import validate_coords


def wendland(d: np.ndarray, radius: float) -> np.ndarray:
    """
    Evaluate the Wendland psi_{3,1} kernel at distances d.

    The kernel is
        phi(r) = (1 - r)^4 (4r + 1),  r = d / radius,  r < 1
    and zero otherwise. It is positive definite in up to three dimensions,
    equals one at d = 0 and reaches zero at the radius with two continuous
    derivatives.

    Parameters
    ----------
    d : np.ndarray
        Non-negative distances
    radius : float
        Support radius

    Returns
    -------
    np.ndarray
        Kernel values, same shape as d
    """
    r = np.asarray(d, dtype=float) / radius
    inside = r < 1.0
    values = np.zeros_like(r)
    ri = r[inside]
    values[inside] = (1.0 - ri) ** 4 * (4.0 * ri + 1.0)
    return values


def expected_neighbor_count(overlap: float, dim: int = 2) -> float:
    """
    Expected number of knots inside the support of an interior point.

    :param overlap: Support radius in units of knot spacing
    :param dim: Spatial dimension (2 or 3)
    :return: Volume of the support ball in knot-cell units
    """
    if dim == 2:
        return np.pi * overlap ** 2
    if dim == 3:
        return 4.0 / 3.0 * np.pi * overlap ** 3
    raise BasisError(f"Unsupported dimension {dim}, expected 2 or 3")


class LatticeLevel:
    """
    Knot lattice for one resolution level.

    Attributes
    ----------
    level : int
        1-based resolution index
    spacing : float
        Distance between adjacent knots along every axis
    radius : float
        Wendland support radius
    axes : list of np.ndarray
        Knot positions along each coordinate axis
    grid_shape : tuple
        Number of knots along each axis
    knots : np.ndarray
        Knot coordinates (n_knots, dim), C-order over grid_shape
    """

    def __init__(self, level: int, spacing: float, radius: float, axes: List[np.ndarray]):
        self.level = level
        self.spacing = spacing
        self.radius = radius
        self.axes = [np.asarray(a, dtype=float) for a in axes]
        self.grid_shape = tuple(len(a) for a in self.axes)

        mesh = np.meshgrid(*self.axes, indexing='ij')
        self.knots = np.column_stack([m.ravel() for m in mesh])

    @property
    def n_knots(self) -> int:
        return int(np.prod(self.grid_shape))

    @property
    def dim(self) -> int:
        return len(self.axes)

    def bounds(self):
        """Lower and upper knot positions along each axis."""
        lower = np.array([a[0] for a in self.axes])
        upper = np.array([a[-1] for a in self.axes])
        return lower, upper

    def __repr__(self) -> str:
        shape = "x".join(str(n) for n in self.grid_shape)
        return (f"LatticeLevel(level={self.level}, grid={shape}, "
                f"spacing={self.spacing:.4g}, radius={self.radius:.4g})")


def build_lattice(
    coords: np.ndarray,
    n_levels: int,
    nc: Optional[int] = None,
    nc_fine: Optional[int] = None,
    overlap: float = 2.5,
    buffer: Optional[int] = None,
    refinement: float = 2.0,
) -> List[LatticeLevel]:
    """
    Lay out nested knot lattices over the site domain.

    Parameters
    ----------
    coords : np.ndarray
        Site coordinates (n_obs, dim)
    n_levels : int
        Number of resolution levels M
    nc : int, optional
        Knots along the longest side of the site bounding box at level 1
    nc_fine : int, optional
        Knots along the longest side at level M. The coarse count is derived
        from it. Exactly one of nc and nc_fine must be given.
    overlap : float
        Support radius in units of the level's knot spacing
    buffer : int, optional
        Extra knots added beyond the bounding box on each side, so that
        sites near the edge see a full set of basis functions.
        Defaults to ceil(overlap).
    refinement : float
        Ratio between consecutive spacings (2 halves the spacing per level)

    Returns
    -------
    list of LatticeLevel
        One lattice per level, coarsest first
    """
    coords = validate_coords(coords)

    if int(n_levels) != n_levels or n_levels < 1:
        raise BasisError(f"n_levels must be a positive integer, got {n_levels}")
    n_levels = int(n_levels)
    if overlap <= 0:
        raise BasisError(f"overlap must be positive, got {overlap}")
    if refinement <= 1:
        raise BasisError(f"refinement must be greater than 1, got {refinement}")
    if buffer is None:
        buffer = int(np.ceil(overlap))
    if buffer < 0:
        raise BasisError(f"buffer must be non-negative, got {buffer}")

    if (nc is None) == (nc_fine is None):
        raise BasisError("Specify exactly one of nc (coarse grid size) or nc_fine (fine grid size)")

    lower = coords.min(axis=0)
    upper = coords.max(axis=0)
    extent = upper - lower
    max_extent = np.max(extent)
    if max_extent <= 0:
        raise BasisError("Site coordinates have zero extent, cannot lay out a lattice")

    if nc is None:
        if nc_fine < 2:
            raise BasisError(f"nc_fine must be at least 2, got {nc_fine}")
        nc = int(np.floor((nc_fine - 1) / refinement ** (n_levels - 1))) + 1
    if nc < 2:
        raise BasisError(
            f"Coarse grid has {nc} knot(s) along the longest side; "
            "use fewer levels or a larger grid size"
        )

    delta = max_extent / (nc - 1)

    levels = []
    for m in range(1, n_levels + 1):
        spacing = delta / refinement ** (m - 1)
        axes = []
        for d in range(coords.shape[1]):
            n_interior = int(np.ceil(extent[d] / spacing - 1e-9)) + 1
            n_axis = n_interior + 2 * buffer
            start = lower[d] - buffer * spacing
            axes.append(start + spacing * np.arange(n_axis))
        levels.append(LatticeLevel(m, spacing, overlap * spacing, axes))

    return levels


def wendland_basis(coords: np.ndarray, level: LatticeLevel) -> sparse.csr_matrix:
    """
    Compute basis matrix W where W[i,k] = phi(|s_i - u_k|) for one level.

    Only site-knot pairs closer than the support radius are stored.

    Parameters
    ----------
    coords : np.ndarray
        Site coordinates (n_obs, dim)
    level : LatticeLevel
        Knot lattice

    Returns
    -------
    sparse.csr_matrix
        Basis matrix (n_obs x n_knots)
    """
    coords = validate_coords(coords)
    if coords.shape[1] != level.dim:
        raise BasisError(
            f"Coordinates have dimension {coords.shape[1]}, lattice has dimension {level.dim}"
        )

    site_tree = KDTree(coords)
    knot_tree = KDTree(level.knots)
    pairs = site_tree.sparse_distance_matrix(
        knot_tree, level.radius, output_type='ndarray'
    )

    values = wendland(pairs['v'], level.radius)
    keep = values > 0

    W = sparse.csr_matrix(
        (values[keep], (pairs['i'][keep], pairs['j'][keep])),
        shape=(len(coords), level.n_knots)
    )
    W.sum_duplicates()
    return W


def compute_basis_matrices(
    coords: np.ndarray,
    levels: List[LatticeLevel],
    verbose: bool = False
) -> List[sparse.csr_matrix]:
    """
    Compute one Wendland basis matrix per level.

    :param coords: Site coordinates (n_obs, dim)
    :param levels: Lattices from build_lattice()
    :param verbose: Print per-level sizes
    :return: List of sparse basis matrices
    """
    basis = []
    for level in levels:
        W = wendland_basis(coords, level)
        basis.append(W)

        empty_rows = np.sum(np.diff(W.indptr) == 0)
        if empty_rows > 0:
            warnings.warn(
                f"Level {level.level}: {empty_rows} sites fall outside every basis support",
                UserWarning
            )

        if verbose:
            avg = W.nnz / W.shape[0]
            print(f"  Level {level.level}: {level.n_knots:,} knots, "
                  f"radius {level.radius:.4g}, {avg:.1f} basis functions per site")

    return basis
