"""
Weighted triangulation from field magnitudes.
"""

from .weighted_centroid import estimate_triangulation, NOISE_FLOOR_MILLI_UT

__all__ = ['estimate_triangulation', 'NOISE_FLOOR_MILLI_UT']
