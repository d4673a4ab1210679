"""
Field-strength weighted centroid of the sensor positions.
A stronger magnet-only field is taken as a proxy for proximity.
"""

from typing import Dict, Tuple

import numpy as np

from ..errors import InsufficientDataError


NOISE_FLOOR_MILLI_UT = 100.0
MIN_NODES = 2


def estimate_triangulation(
    fields: Dict[int, np.ndarray],
    sensor_positions: Dict[int, np.ndarray],
    noise_floor: float = NOISE_FLOOR_MILLI_UT
) -> Tuple[float, float]:
    """
    Weighted average of sensor positions, weight = |B_magnet|.

    Every node with a valid baseline participates; nodes whose field is below
    the noise floor participate with zero weight.

    Args:
        fields: node_id -> magnet-only field (valid baselines only)
        sensor_positions: node_id -> [x, y, z]
        noise_floor: Magnitudes below this are treated as no signal (m-uT)

    Returns:
        (x, y) weighted centroid

    Raises:
        InsufficientDataError: Fewer than 2 participating nodes or no signal at all
    """
    participating = [nid for nid in fields if nid in sensor_positions]
    if len(participating) < MIN_NODES:
        raise InsufficientDataError(
            f"Triangulation needs at least {MIN_NODES} nodes, got {len(participating)}"
        )

    sum_w = 0.0
    wx = 0.0
    wy = 0.0

    for nid in participating:
        magnitude = float(np.linalg.norm(np.asarray(fields[nid], dtype=float)))
        if magnitude < noise_floor:
            continue
        pos = sensor_positions[nid]
        sum_w += magnitude
        wx += magnitude * float(pos[0])
        wy += magnitude * float(pos[1])

    if sum_w <= 0.0:
        raise InsufficientDataError("No node above the noise floor")

    return wx / sum_w, wy / sum_w
