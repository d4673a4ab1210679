"""
Calibration lookup-table interpolation.
"""

from .interpolation import estimate_lookup

__all__ = ['estimate_lookup']
