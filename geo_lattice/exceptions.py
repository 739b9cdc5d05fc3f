"""Custom exceptions for geo_lattice package"""

class GeoLatticeError(Exception):
    """Base exception for geo_lattice package"""
    pass

class ConfigurationError(GeoLatticeError):
    """Raised for invalid inputs, dimensions or settings, before sampling starts"""
    pass

class CoordsError(ConfigurationError):
    """Raised for coordinate processing errors"""
    pass

class BasisError(ConfigurationError):
    """Raised when a lattice or basis specification cannot be built"""
    pass

class MatrixError(ConfigurationError):
    """Raised for precision matrix construction errors"""
    pass

class ConstraintError(ConfigurationError):
    """Raised when a linear constraint system is malformed or rank-deficient"""
    pass

class NumericalError(GeoLatticeError):
    """Raised when a factorization fails (matrix not positive definite or singular)"""

    def __init__(self, message, block=None, iteration=None):
        self.base_message = message
        self.block = block
        self.iteration = iteration
        details = []
        if block is not None:
            details.append(f"block={block}")
        if iteration is not None:
            details.append(f"iteration={iteration}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)

    def __reduce__(self):
        return (NumericalError, (self.base_message, self.block, self.iteration))
