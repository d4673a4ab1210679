"""
Point dipole field model and position solvers.
"""

from .model import dipole_field, dipole_jacobian
from .solver import DipoleSolver, DipoleLeastSquaresSolver, solve_3x3

__all__ = [
    'dipole_field',
    'dipole_jacobian',
    'DipoleSolver',
    'DipoleLeastSquaresSolver',
    'solve_3x3',
]
