"""
Errors shared by the position estimators.
"""


class InsufficientDataError(ValueError):
    """Not enough nodes or calibration points to produce an estimate."""
