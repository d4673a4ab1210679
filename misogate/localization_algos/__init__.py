"""
Magnetic position estimation algorithms.
"""

from .errors import InsufficientDataError
from .dipole.model import dipole_field, dipole_jacobian
from .dipole.solver import DipoleSolver, DipoleLeastSquaresSolver
from .lookup.interpolation import estimate_lookup
from .triangulation.weighted_centroid import estimate_triangulation
from .fusion.blend import estimate_position_2d, PositionEngine

__all__ = [
    'InsufficientDataError',
    'dipole_field',
    'dipole_jacobian',
    'DipoleSolver',
    'DipoleLeastSquaresSolver',
    'estimate_lookup',
    'estimate_triangulation',
    'estimate_position_2d',
    'PositionEngine'
]
