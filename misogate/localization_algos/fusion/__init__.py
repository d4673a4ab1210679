"""
Estimator combination policy.
"""

from .blend import estimate_position_2d, PositionEngine, ESTIMATION_METHODS

__all__ = ['estimate_position_2d', 'PositionEngine', 'ESTIMATION_METHODS']
