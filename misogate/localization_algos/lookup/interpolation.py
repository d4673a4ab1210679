"""
Inverse-distance interpolation over the calibration lookup table.
Distances are measured in field space, not in position space.
"""

from typing import Dict, Sequence, Tuple

import numpy as np

from misogate.datatypes.datatypes import CalibrationPointSnapshot
from ..errors import InsufficientDataError

MIN_POINTS = 2
MIN_NODES_PER_POINT = 2


def estimate_lookup(
    fields: Dict[int, np.ndarray],
    points: Sequence[CalibrationPointSnapshot]
) -> Tuple[float, float]:
    """
    Interpolate the magnet position from recorded calibration fields.

    Each point is weighted by 1 / max(d^2, 1), where d^2 is the mean squared
    field difference over the nodes valid both now and at that point.

    Args:
        fields: node_id -> current magnet-only field (valid baselines only)
        points: Calibration points in recording order

    Returns:
        (x, y) weighted average of point coordinates

    Raises:
        InsufficientDataError: Fewer than 2 points, or no point shares 2 nodes
    """
    if len(points) < MIN_POINTS:
        raise InsufficientDataError(
            f"Lookup needs at least {MIN_POINTS} calibration points, got {len(points)}"
        )

    sum_w = 0.0
    wx = 0.0
    wy = 0.0

    for point in points:
        shared = [nid for nid in point.node_fields if nid in fields]
        if len(shared) < MIN_NODES_PER_POINT:
            continue

        dist_sq = 0.0
        for nid in shared:
            diff = np.asarray(fields[nid], dtype=float) - np.asarray(point.node_fields[nid], dtype=float)
            dist_sq += float(np.dot(diff, diff))
        dist_sq /= len(shared)

        w = 1.0 / max(dist_sq, 1.0)
        sum_w += w
        wx += w * point.x
        wy += w * point.y

    if sum_w <= 0.0:
        raise InsufficientDataError("No calibration point shares 2 valid nodes with the current reading")

    return wx / sum_w, wy / sum_w
