"""
Gateway context: the single owner of decoder, calibration, per-node runtime
state and the published position. The ingestion, console and publisher loops
all go through this object.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from misogate.calibration.state_machine import CalibrationStateMachine
from misogate.datatypes.datatypes import (
    NodeRuntimeState,
    PositionEstimate,
    ReceivedPacket,
    SensorFrame,
)
from misogate.localization_algos.dipole.solver import DipoleSolver
from misogate.localization_algos.fusion.blend import PositionEngine
from misogate.secure_frame.codec import SecureFrameDecoder
from .config import GatewayConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewaySnapshot:
    """Consistent view for the publisher and the console."""
    phase: str
    running: bool
    position: Optional[PositionEstimate]
    frames_accepted: int
    frames_rejected: int

    @property
    def position_available(self) -> bool:
        return self.position is not None


class GatewayContext:
    """
    Shared state behind one lock (plus the calibration machine's own lock).
    """

    def __init__(self, config: Optional[GatewayConfig] = None):
        """
        Initialize the context.

        Args:
            config: Gateway configuration (defaults to the field setup)
        """
        self.config = config or GatewayConfig()
        self.layout = self.config.layout()

        self.decoder = SecureFrameDecoder(self.config.master_key)
        self.calibration = CalibrationStateMachine(
            max_nodes=self.config.max_nodes,
            baseline_readings_required=self.config.baseline_readings_required,
            calib_readings_per_point=self.config.calib_readings_per_point,
            max_calib_points=self.config.max_calib_points
        )
        self.engine = PositionEngine(
            self.layout,
            method=self.config.estimation_method,
            noise_floor=self.config.noise_floor_milli_ut,
            solver=DipoleSolver(
                self.layout,
                max_iterations=self.config.gn_max_iterations,
                convergence_threshold=self.config.gn_convergence_threshold,
                damping_factor=self.config.gn_damping_factor
            )
        )

        self._lock = threading.Lock()
        self._nodes: Dict[int, NodeRuntimeState] = {
            nid: NodeRuntimeState() for nid in range(1, self.config.max_nodes + 1)
        }
        self._position: Optional[PositionEstimate] = None

    # ------------------------------------------------------------------
    # Ingestion path
    # ------------------------------------------------------------------

    def handle_packet(self, packet: ReceivedPacket) -> Optional[PositionEstimate]:
        """
        Authenticate and process one radio payload.

        Returns:
            New position estimate if one was produced for this frame
        """
        frame = self.decoder.decode(packet.payload)
        if frame is None:
            logger.warning(json.dumps({
                "event": "security_drop",
                "len": len(packet.payload),
                "rssi": packet.rssi,
                "snr": packet.snr
            }))
            return None
        return self.handle_frame(frame, rssi=packet.rssi, snr=packet.snr)

    def handle_frame(self, frame: SensorFrame, rssi: int = 0, snr: int = 0) -> Optional[PositionEstimate]:
        """
        Route an authenticated frame: calibration accumulation, runtime state
        update and (when running) a new position estimate.

        Returns:
            New position estimate, or None
        """
        if not 1 <= frame.node_id <= self.config.max_nodes:
            logger.warning(json.dumps({
                "event": "unexpected_node",
                "node_id": frame.node_id,
                "max_nodes": self.config.max_nodes
            }))
            return None

        raw = frame.field_vector
        baseline = self.calibration.process_reading(frame.node_id, raw)

        if baseline is not None:
            magnet_field = raw - baseline
        else:
            magnet_field = np.zeros(3, dtype=np.int64)

        with self._lock:
            state = self._nodes[frame.node_id]
            state.last_raw = raw
            state.last_magnet_field = magnet_field
            state.last_magnitude = int(np.linalg.norm(magnet_field.astype(float)))
            state.last_seq = frame.seq
            state.last_rssi = rssi
            state.last_snr = snr
            state.have_baseline = baseline is not None

        logger.info(json.dumps({
            "event": "frame_accepted",
            "node_id": frame.node_id,
            "tx_seq": frame.seq,
            "B": [int(v) for v in raw],
            "B_mag": [int(v) for v in magnet_field],
            "temp_c": frame.temp_c_times10 / 10.0,
            "rssi": rssi,
            "snr": snr
        }))

        calib = self.calibration.snapshot()
        if calib.phase != "running":
            return None

        with self._lock:
            fields = {
                nid: state.last_magnet_field.copy()
                for nid, state in self._nodes.items()
                if state.have_baseline and nid in calib.baselines
                and state.last_magnet_field is not None
            }
            estimate = self.engine.estimate(fields, calib.points)
            self._position = estimate

        if estimate is None:
            logger.info(json.dumps({
                "event": "position_unavailable",
                "nodes": sorted(fields)
            }))
        else:
            logger.info(json.dumps({
                "event": "position_updated",
                "x": estimate.x,
                "y": estimate.y,
                "method": estimate.method
            }))
        return estimate

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def snapshot(self) -> GatewaySnapshot:
        """Copy of the publishable state."""
        phase = self.calibration.phase_name
        with self._lock:
            return GatewaySnapshot(
                phase=phase,
                running=phase == "running",
                position=self._position,
                frames_accepted=self.decoder.accepted,
                frames_rejected=self.decoder.rejected
            )

    def node_state(self, node_id: int) -> NodeRuntimeState:
        """Copy of one node's runtime state."""
        with self._lock:
            state = self._nodes[node_id]
            return NodeRuntimeState(
                last_raw=None if state.last_raw is None else state.last_raw.copy(),
                last_magnet_field=None if state.last_magnet_field is None else state.last_magnet_field.copy(),
                last_magnitude=state.last_magnitude,
                last_seq=state.last_seq,
                last_rssi=state.last_rssi,
                last_snr=state.last_snr,
                have_baseline=state.have_baseline
            )

    def estimate_dipole(self) -> Optional[PositionEstimate]:
        """
        Run the dipole solver on the current fields regardless of the
        configured method (diagnostics / cross-check).
        """
        calib = self.calibration.snapshot()
        with self._lock:
            fields = {
                nid: state.last_magnet_field.copy()
                for nid, state in self._nodes.items()
                if state.have_baseline and nid in calib.baselines
                and state.last_magnet_field is not None
            }
            try:
                return self.engine.solver.solve(fields).clamped()
            except ValueError as e:
                logger.info(json.dumps({
                    "event": "position_unavailable",
                    "method": "dipole",
                    "reason": str(e)
                }))
                return None

    def describe_position(self) -> str:
        """Operator-facing position text."""
        snap = self.snapshot()
        if snap.position is None:
            return "unavailable"
        x, y = snap.position.as_xy()
        return f"x={x} y={y} ({snap.position.method})"
