"""
Gateway configuration: sensor geometry, protocol key, calibration quotas and
loop timing. Defaults match the deployed field setup; every value can be
overridden from MISOGATE_* environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from misogate.calibration.state_machine import (
    BASELINE_READINGS_REQUIRED,
    CALIB_READINGS_PER_POINT,
    MAX_CALIB_POINTS,
    MAX_NODES,
)
from misogate.datatypes.datatypes import SensorLayout
from misogate.localization_algos.fusion.blend import ESTIMATION_METHODS
from misogate.localization_algos.triangulation.weighted_centroid import NOISE_FLOOR_MILLI_UT
from misogate.secure_frame.codec import DEFAULT_MASTER_KEY


def _default_sensor_positions() -> Dict[int, Tuple[float, float, float]]:
    return {
        1: (500.0, 1000.0, 0.0),   # top-middle
        2: (1000.0, 0.0, 0.0),     # bottom-right corner
        3: (0.0, 0.0, 0.0),        # bottom-left corner
        4: (0.0, 1000.0, 0.0),     # top-left corner
    }


@dataclass(frozen=True)
class GatewayConfig:
    """Runtime configuration for the gateway core and its loops."""
    master_key: bytes = DEFAULT_MASTER_KEY
    sensor_positions: Dict[int, Tuple[float, float, float]] = field(default_factory=_default_sensor_positions)
    magnet_height_z0: float = 20.0
    dipole_orientation: Tuple[float, float, float] = (0.0, 0.0, 1.0)

    max_nodes: int = MAX_NODES
    baseline_readings_required: int = BASELINE_READINGS_REQUIRED
    calib_readings_per_point: int = CALIB_READINGS_PER_POINT
    max_calib_points: int = MAX_CALIB_POINTS

    estimation_method: str = "blend"
    noise_floor_milli_ut: float = NOISE_FLOOR_MILLI_UT
    gn_max_iterations: int = 20
    gn_convergence_threshold: float = 0.1
    gn_damping_factor: float = 1e-3  # initial Marquardt lambda

    receive_timeout_s: float = 10.0
    publish_interval_s: float = 1.0

    def __post_init__(self):
        if len(self.master_key) != 16:
            raise ValueError(f"master_key must be 16 bytes, got {len(self.master_key)}")
        if self.estimation_method not in ESTIMATION_METHODS:
            raise ValueError(f"estimation_method must be one of {ESTIMATION_METHODS}")
        if len(self.dipole_orientation) != 3:
            raise ValueError("dipole_orientation must have 3 components")
        for nid in self.sensor_positions:
            if not 1 <= nid <= self.max_nodes:
                raise ValueError(f"Sensor position for node {nid} outside 1..{self.max_nodes}")

    def layout(self) -> SensorLayout:
        """Sensor layout used by the estimators."""
        return SensorLayout(
            positions={
                nid: np.array(pos, dtype=float)
                for nid, pos in self.sensor_positions.items()
            },
            magnet_height_z0=self.magnet_height_z0,
            dipole_orientation=self.dipole_orientation
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "GatewayConfig":
        """
        Build a config from MISOGATE_* environment variables.

        MISOGATE_MASTER_KEY          32 hex chars
        MISOGATE_SENSOR_POSITIONS    JSON object {"1": [x, y, z], ...}
        MISOGATE_MAGNET_HEIGHT       float
        MISOGATE_DIPOLE_ORIENTATION  "mx,my,mz"
        MISOGATE_BASELINE_READINGS   int
        MISOGATE_CALIB_READINGS      int
        MISOGATE_METHOD              blend | dipole | dipole_lsq | triangulation | lookup
        MISOGATE_NOISE_FLOOR         float (m-uT)
        MISOGATE_RX_TIMEOUT_S        float
        MISOGATE_PUBLISH_INTERVAL_S  float
        """
        env = os.environ if environ is None else environ
        values = {}

        if "MISOGATE_MASTER_KEY" in env:
            values["master_key"] = bytes.fromhex(env["MISOGATE_MASTER_KEY"])
        if "MISOGATE_SENSOR_POSITIONS" in env:
            raw = json.loads(env["MISOGATE_SENSOR_POSITIONS"])
            values["sensor_positions"] = {
                int(nid): tuple(float(v) for v in pos) for nid, pos in raw.items()
            }
        if "MISOGATE_MAGNET_HEIGHT" in env:
            values["magnet_height_z0"] = float(env["MISOGATE_MAGNET_HEIGHT"])
        if "MISOGATE_DIPOLE_ORIENTATION" in env:
            values["dipole_orientation"] = tuple(
                float(v) for v in env["MISOGATE_DIPOLE_ORIENTATION"].split(",")
            )
        if "MISOGATE_BASELINE_READINGS" in env:
            values["baseline_readings_required"] = int(env["MISOGATE_BASELINE_READINGS"])
        if "MISOGATE_CALIB_READINGS" in env:
            values["calib_readings_per_point"] = int(env["MISOGATE_CALIB_READINGS"])
        if "MISOGATE_METHOD" in env:
            values["estimation_method"] = env["MISOGATE_METHOD"]
        if "MISOGATE_NOISE_FLOOR" in env:
            values["noise_floor_milli_ut"] = float(env["MISOGATE_NOISE_FLOOR"])
        if "MISOGATE_RX_TIMEOUT_S" in env:
            values["receive_timeout_s"] = float(env["MISOGATE_RX_TIMEOUT_S"])
        if "MISOGATE_PUBLISH_INTERVAL_S" in env:
            values["publish_interval_s"] = float(env["MISOGATE_PUBLISH_INTERVAL_S"])

        values.update(overrides)
        return cls(**values)
