"""
Operator-driven calibration (baseline capture and lookup-table points).
"""

from .state_machine import (
    CalibrationStateMachine,
    CalibrationError,
    CalibrationSnapshot,
    BaselineStatus,
    MAX_NODES,
    BASELINE_READINGS_REQUIRED,
    CALIB_READINGS_PER_POINT,
    MAX_CALIB_POINTS,
)
from .console import CalibrationConsole

__all__ = [
    'CalibrationStateMachine',
    'CalibrationError',
    'CalibrationSnapshot',
    'BaselineStatus',
    'CalibrationConsole',
    'MAX_NODES',
    'BASELINE_READINGS_REQUIRED',
    'CALIB_READINGS_PER_POINT',
    'MAX_CALIB_POINTS',
]
