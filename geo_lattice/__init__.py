"""
GEO_LATTICE: Bayesian multi-resolution lattice kriging with a Gibbs sampler
"""

__version__ = "0.1.0"

# Main API
from .model import LatticeKrig

# Priors
from .priors import (
    default_priors,
    validate_priors,
)

# Core components (for advanced users)
from .coords import preprocess_coords
from .basis import (
    LatticeLevel,
    build_lattice,
    wendland,
    wendland_basis,
    compute_basis_matrices,
)
from .matrices import (
    CARStructure,
    car_precision,
    build_car_precisions,
    assemble_precision,
    sum_to_zero_constraints,
)
from .sampling import (
    CholeskyFactor,
    sample_precision,
    sample_constrained,
)
from .gibbs import run_chain, validate_sampler_config

# Exceptions
from .exceptions import (
    GeoLatticeError,
    ConfigurationError,
    CoordsError,
    BasisError,
    MatrixError,
    ConstraintError,
    NumericalError,
)

__all__ = [
    # Main API
    'LatticeKrig',

    # Priors
    'default_priors',
    'validate_priors',

    # Core components
    'preprocess_coords',
    'LatticeLevel',
    'build_lattice',
    'wendland',
    'wendland_basis',
    'compute_basis_matrices',
    'CARStructure',
    'car_precision',
    'build_car_precisions',
    'assemble_precision',
    'sum_to_zero_constraints',
    'CholeskyFactor',
    'sample_precision',
    'sample_constrained',
    'run_chain',
    'validate_sampler_config',

    # Exceptions
    'GeoLatticeError',
    'ConfigurationError',
    'CoordsError',
    'BasisError',
    'MatrixError',
    'ConstraintError',
    'NumericalError',
]
