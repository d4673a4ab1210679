"""
Core datatypes for the misogate gateway.
"""

from .datatypes import (
    COORD_MIN,
    COORD_MAX,
    clamp_coordinate,
    SensorFrame,
    ReceivedPacket,
    BaselineData,
    PointContribution,
    CalibrationPoint,
    CalibrationPointSnapshot,
    NodeRuntimeState,
    PositionEstimate,
    SensorLayout,
)

__all__ = [
    'COORD_MIN',
    'COORD_MAX',
    'clamp_coordinate',
    'SensorFrame',
    'ReceivedPacket',
    'BaselineData',
    'PointContribution',
    'CalibrationPoint',
    'CalibrationPointSnapshot',
    'NodeRuntimeState',
    'PositionEstimate',
    'SensorLayout',
]
