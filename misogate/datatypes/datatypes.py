"""
Core datatypes for the misogate magnetic tracking gateway.
Frames and estimates are frozen; calibration accumulators are mutated under the
calibration lock only.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

# Coordinate system of the tracked area
COORD_MIN = 0.0
COORD_MAX = 1000.0


def clamp_coordinate(value: float) -> float:
    """Clamp a coordinate into the valid [0, 1000] range."""
    return max(COORD_MIN, min(COORD_MAX, float(value)))


def div_trunc(total: int, count: int) -> int:
    """Integer division truncating toward zero (matches the node firmware averages)."""
    q = abs(total) // count
    return q if total >= 0 else -q


@dataclass(frozen=True)
class SensorFrame:
    """Decoded and authenticated reading from one magnetometer node."""
    node_id: int          # 1..MAX_NODES
    seq: int              # Strictly increasing per node
    x_milli_ut: int       # Field components in milli-microtesla
    y_milli_ut: int
    z_milli_ut: int
    temp_c_times10: int   # Temperature in 0.1 degC

    @property
    def field_vector(self) -> np.ndarray:
        """Raw field as an int64 vector."""
        return np.array([self.x_milli_ut, self.y_milli_ut, self.z_milli_ut], dtype=np.int64)


@dataclass(frozen=True)
class ReceivedPacket:
    """Opaque radio payload plus link diagnostics."""
    payload: bytes
    rssi: int = 0
    snr: int = 0


@dataclass
class BaselineData:
    """Ambient field accumulator for one node (magnet absent)."""
    valid: bool = False
    readings_collected: int = 0
    sum_x: int = 0
    sum_y: int = 0
    sum_z: int = 0
    ambient: Optional[np.ndarray] = None  # int64 [x, y, z] once valid

    def add(self, raw: np.ndarray, required: int) -> bool:
        """
        Accumulate one reading.

        Returns:
            True if this reading completed the baseline
        """
        if self.valid:
            return False
        self.sum_x += int(raw[0])
        self.sum_y += int(raw[1])
        self.sum_z += int(raw[2])
        self.readings_collected += 1
        if self.readings_collected >= required:
            n = self.readings_collected
            self.ambient = np.array([
                div_trunc(self.sum_x, n),
                div_trunc(self.sum_y, n),
                div_trunc(self.sum_z, n)
            ], dtype=np.int64)
            self.valid = True
            return True
        return False


@dataclass
class PointContribution:
    """One node's accumulated magnet-induced field at a calibration point."""
    reading_count: int = 0
    sum_x: int = 0
    sum_y: int = 0
    sum_z: int = 0
    valid: bool = False
    average: Optional[np.ndarray] = None  # int64 averaged (raw - baseline)


@dataclass
class CalibrationPoint:
    """Operator-placed magnet position and the fields it produced at each node."""
    x: int
    y: int
    contributions: Dict[int, PointContribution] = field(default_factory=dict)

    def add(self, node_id: int, magnet_field: np.ndarray, required: int) -> bool:
        """
        Accumulate one magnet-only reading for a node.

        Returns:
            True if this reading finalized the node's contribution
        """
        contrib = self.contributions.setdefault(node_id, PointContribution())
        if contrib.valid:
            return False
        contrib.sum_x += int(magnet_field[0])
        contrib.sum_y += int(magnet_field[1])
        contrib.sum_z += int(magnet_field[2])
        contrib.reading_count += 1
        if contrib.reading_count >= required:
            n = contrib.reading_count
            contrib.average = np.array([
                div_trunc(contrib.sum_x, n),
                div_trunc(contrib.sum_y, n),
                div_trunc(contrib.sum_z, n)
            ], dtype=np.int64)
            contrib.valid = True
            return True
        return False

    def valid_fields(self) -> Dict[int, np.ndarray]:
        """Node id -> averaged field, for fully populated nodes only."""
        return {
            nid: c.average for nid, c in self.contributions.items()
            if c.valid and c.average is not None
        }


@dataclass(frozen=True)
class CalibrationPointSnapshot:
    """Read-only view of a calibration point used by the estimators."""
    x: int
    y: int
    node_fields: Dict[int, np.ndarray]  # node_id -> averaged magnet-only field


@dataclass
class NodeRuntimeState:
    """Latest readings for one node, overwritten on every accepted frame."""
    last_raw: Optional[np.ndarray] = None
    last_magnet_field: Optional[np.ndarray] = None
    last_magnitude: int = 0
    last_seq: int = 0
    last_rssi: int = 0
    last_snr: int = 0
    have_baseline: bool = False


@dataclass(frozen=True)
class PositionEstimate:
    """Position estimate plus solver diagnostics (dipole method only)."""
    x: float
    y: float
    method: str = "blend"
    M: Optional[float] = None
    error: Optional[float] = None
    iterations: int = 0
    converged: bool = False

    def clamped(self) -> "PositionEstimate":
        """Copy with x/y clamped to the coordinate bound."""
        return PositionEstimate(
            x=clamp_coordinate(self.x),
            y=clamp_coordinate(self.y),
            method=self.method,
            M=self.M,
            error=self.error,
            iterations=self.iterations,
            converged=self.converged
        )

    def as_xy(self) -> Tuple[int, int]:
        """Integer coordinates for publishing."""
        est = self.clamped()
        return int(round(est.x)), int(round(est.y))


@dataclass(frozen=True)
class SensorLayout:
    """Fixed sensor positions (sensor plane is z=0) and the magnet model geometry."""
    positions: Dict[int, np.ndarray]  # node_id -> [x, y, z] in coordinate units
    magnet_height_z0: float = 20.0    # Magnet plane height above the sensor plane
    dipole_orientation: Tuple[float, float, float] = (0.0, 0.0, 1.0)

    def get_position(self, node_id: int) -> np.ndarray:
        """Get the position of a specific sensor node."""
        if node_id not in self.positions:
            raise ValueError(f"Node {node_id} not found in layout")
        return self.positions[node_id]

    def get_all_positions(self) -> Dict[int, np.ndarray]:
        """Get all sensor positions."""
        return dict(self.positions)  # Return a copy to prevent modification

    @property
    def m_hat(self) -> np.ndarray:
        """Dipole orientation as a unit vector."""
        m = np.asarray(self.dipole_orientation, dtype=float)
        norm = np.linalg.norm(m)
        if norm <= 0.0:
            raise ValueError("Dipole orientation must be non-zero")
        return m / norm
