"""
Combination policy for the running pipeline, and the engine that owns the
dipole solver warm start and dispatches on the configured method.
"""

import json
import logging
from typing import Dict, Optional, Sequence

import numpy as np

from misogate.datatypes.datatypes import (
    CalibrationPointSnapshot,
    PositionEstimate,
    SensorLayout,
)
from ..errors import InsufficientDataError
from ..dipole.solver import DipoleLeastSquaresSolver, DipoleSolver
from ..lookup.interpolation import estimate_lookup, MIN_POINTS
from ..triangulation.weighted_centroid import estimate_triangulation, NOISE_FLOOR_MILLI_UT

logger = logging.getLogger(__name__)

TRIANGULATION_WEIGHT = 0.7
LOOKUP_WEIGHT = 0.3

ESTIMATION_METHODS = ("blend", "dipole", "dipole_lsq", "triangulation", "lookup")


def estimate_position_2d(
    fields: Dict[int, np.ndarray],
    sensor_positions: Dict[int, np.ndarray],
    points: Sequence[CalibrationPointSnapshot] = (),
    noise_floor: float = NOISE_FLOOR_MILLI_UT
) -> Optional[PositionEstimate]:
    """
    Triangulation, refined by the lookup table when one is available.

    1. Triangulate; if at least 2 calibration points exist and lookup succeeds,
       blend 0.7 * triangulation + 0.3 * lookup
    2. If triangulation fails, use lookup alone
    3. Otherwise no estimate

    Returns:
        Clamped PositionEstimate, or None when there is not enough data
    """
    try:
        tri_x, tri_y = estimate_triangulation(fields, sensor_positions, noise_floor)
    except InsufficientDataError as e:
        logger.debug(json.dumps({
            "event": "triangulation_unavailable",
            "reason": str(e)
        }))
    else:
        if len(points) >= MIN_POINTS:
            try:
                lk_x, lk_y = estimate_lookup(fields, points)
            except InsufficientDataError:
                pass
            else:
                return PositionEstimate(
                    x=TRIANGULATION_WEIGHT * tri_x + LOOKUP_WEIGHT * lk_x,
                    y=TRIANGULATION_WEIGHT * tri_y + LOOKUP_WEIGHT * lk_y,
                    method="blend"
                ).clamped()
        return PositionEstimate(x=tri_x, y=tri_y, method="triangulation").clamped()

    try:
        lk_x, lk_y = estimate_lookup(fields, points)
    except InsufficientDataError:
        return None
    return PositionEstimate(x=lk_x, y=lk_y, method="lookup").clamped()


class PositionEngine:
    """
    Runs the selected estimation method over the current magnet-only fields.
    """

    def __init__(
        self,
        layout: SensorLayout,
        method: str = "blend",
        noise_floor: float = NOISE_FLOOR_MILLI_UT,
        solver: Optional[DipoleSolver] = None
    ):
        """
        Initialize the engine.

        Args:
            layout: Sensor positions and magnet geometry
            method: One of ESTIMATION_METHODS
            noise_floor: Triangulation noise floor (m-uT)
            solver: Dipole solver to use (one is created from the layout if omitted)
        """
        if method not in ESTIMATION_METHODS:
            raise ValueError(f"Unknown estimation method {method!r}, expected one of {ESTIMATION_METHODS}")
        self.layout = layout
        self.method = method
        self.noise_floor = noise_floor
        self.solver = solver or DipoleSolver(layout)
        self.lsq_solver = DipoleLeastSquaresSolver(layout)

    def estimate(
        self,
        fields: Dict[int, np.ndarray],
        points: Sequence[CalibrationPointSnapshot] = ()
    ) -> Optional[PositionEstimate]:
        """
        Produce a clamped estimate, or None when there is not enough data.

        Args:
            fields: node_id -> magnet-only field, valid baselines only
            points: Frozen calibration points
        """
        if self.method == "blend":
            return estimate_position_2d(fields, self.layout.positions, points, self.noise_floor)

        try:
            if self.method == "dipole":
                return self.solver.solve(fields).clamped()
            if self.method == "dipole_lsq":
                # Warm start from the last Gauss-Newton fix when there is one
                return self.lsq_solver.solve(fields, self.solver.last_estimate).clamped()
            if self.method == "triangulation":
                x, y = estimate_triangulation(fields, self.layout.positions, self.noise_floor)
            else:
                x, y = estimate_lookup(fields, points)
        except InsufficientDataError as e:
            logger.debug(json.dumps({
                "event": "estimate_unavailable",
                "method": self.method,
                "reason": str(e)
            }))
            return None

        return PositionEstimate(x=x, y=y, method=self.method).clamped()
