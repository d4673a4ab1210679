"""
Operator-driven calibration state machine.

Phase 1 (baseline): the magnet is out of the area; every frame feeds the
ambient-field average of its node until the required count is reached.
Phase 2 (position input, optional): the operator places the magnet at known
(x, y) positions; the magnet-only field is averaged per node per point.
Running: baselines and points are frozen and used for position estimation.

Each phase is its own dataclass and only carries the data that exists in that
phase. All transitions and accumulators are guarded by one lock.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from misogate.datatypes.datatypes import (
    BaselineData,
    CalibrationPoint,
    CalibrationPointSnapshot,
)

logger = logging.getLogger(__name__)

MAX_NODES = 4
BASELINE_READINGS_REQUIRED = 10
CALIB_READINGS_PER_POINT = 5
MAX_CALIB_POINTS = 20
MIN_BASELINE_NODES = 2
CALIB_COORD_MIN = 0
CALIB_COORD_MAX = 1000


class CalibrationError(ValueError):
    """Operator command rejected in the current phase."""


@dataclass
class IdlePhase:
    name: str = field(default="idle", init=False)


@dataclass
class BaselinePhase:
    baselines: Dict[int, BaselineData]
    name: str = field(default="baseline", init=False)


@dataclass
class PositionInputPhase:
    baselines: Dict[int, np.ndarray]   # Frozen ambient fields, valid nodes only
    points: List[CalibrationPoint]
    open_point: Optional[int] = None
    name: str = field(default="position_input", init=False)


@dataclass(frozen=True)
class RunningPhase:
    baselines: Dict[int, np.ndarray]
    points: Tuple[CalibrationPointSnapshot, ...]
    name: str = field(default="running", init=False)


Phase = Union[IdlePhase, BaselinePhase, PositionInputPhase, RunningPhase]


@dataclass(frozen=True)
class BaselineStatus:
    """Progress of one node's baseline capture."""
    node_id: int
    valid: bool
    readings_collected: int
    required: int
    ambient: Optional[Tuple[int, int, int]]


@dataclass(frozen=True)
class CalibrationSnapshot:
    """Consistent copy of the calibration state taken under the lock."""
    phase: str
    baselines: Dict[int, np.ndarray]
    points: Tuple[CalibrationPointSnapshot, ...]
    open_point: Optional[int] = None


def _freeze_point(point: CalibrationPoint) -> CalibrationPointSnapshot:
    return CalibrationPointSnapshot(
        x=point.x,
        y=point.y,
        node_fields={nid: vec.copy() for nid, vec in point.valid_fields().items()}
    )


class CalibrationStateMachine:
    """
    Owns baselines and calibration points for node ids 1..max_nodes.
    Safe to call from the ingestion, console and publisher threads.
    """

    def __init__(
        self,
        max_nodes: int = MAX_NODES,
        baseline_readings_required: int = BASELINE_READINGS_REQUIRED,
        calib_readings_per_point: int = CALIB_READINGS_PER_POINT,
        max_calib_points: int = MAX_CALIB_POINTS
    ):
        self.max_nodes = max_nodes
        self.baseline_readings_required = baseline_readings_required
        self.calib_readings_per_point = calib_readings_per_point
        self.max_calib_points = max_calib_points

        self._lock = threading.Lock()
        self._phase: Phase = IdlePhase()

    # ------------------------------------------------------------------
    # Phase queries
    # ------------------------------------------------------------------

    @property
    def phase_name(self) -> str:
        with self._lock:
            return self._phase.name

    def is_running(self) -> bool:
        with self._lock:
            return isinstance(self._phase, RunningPhase)

    def snapshot(self) -> CalibrationSnapshot:
        """Copy of the current phase data."""
        with self._lock:
            phase = self._phase
            if isinstance(phase, BaselinePhase):
                baselines = {
                    nid: bd.ambient.copy() for nid, bd in phase.baselines.items()
                    if bd.valid and bd.ambient is not None
                }
                return CalibrationSnapshot(phase=phase.name, baselines=baselines, points=())
            if isinstance(phase, PositionInputPhase):
                return CalibrationSnapshot(
                    phase=phase.name,
                    baselines={nid: vec.copy() for nid, vec in phase.baselines.items()},
                    points=tuple(_freeze_point(p) for p in phase.points),
                    open_point=phase.open_point
                )
            if isinstance(phase, RunningPhase):
                return CalibrationSnapshot(
                    phase=phase.name,
                    baselines={nid: vec.copy() for nid, vec in phase.baselines.items()},
                    points=phase.points
                )
            return CalibrationSnapshot(phase=phase.name, baselines={}, points=())

    def _valid_node(self, node_id: int) -> bool:
        return 1 <= node_id <= self.max_nodes

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin(self):
        """Idle -> Baseline."""
        with self._lock:
            if not isinstance(self._phase, IdlePhase):
                raise CalibrationError(f"Calibration already started (phase={self._phase.name})")
            self._phase = self._new_baseline_phase()
        self._log_phase("baseline")

    def restart_baseline(self):
        """RESTART: clear every baseline accumulator."""
        with self._lock:
            if not isinstance(self._phase, BaselinePhase):
                raise CalibrationError("RESTART is only available during baseline capture")
            self._phase = self._new_baseline_phase()
        logger.info(json.dumps({"event": "baseline_restarted"}))

    def complete_baseline(self) -> int:
        """
        DONE: freeze valid baselines and move to position input.

        Returns:
            Number of nodes with a valid baseline
        """
        with self._lock:
            phase = self._phase
            if not isinstance(phase, BaselinePhase):
                raise CalibrationError("DONE is only available during baseline capture")
            frozen = {
                nid: bd.ambient.copy() for nid, bd in phase.baselines.items()
                if bd.valid and bd.ambient is not None
            }
            if len(frozen) < MIN_BASELINE_NODES:
                raise CalibrationError(
                    f"Need at least {MIN_BASELINE_NODES} sensors with valid baselines, have {len(frozen)}"
                )
            self._phase = PositionInputPhase(baselines=frozen, points=[])
        self._log_phase("position_input", nodes=sorted(frozen))
        return len(frozen)

    def open_point(self, x: int, y: int) -> int:
        """
        Start collecting a calibration point at (x, y).

        Returns:
            1-based index of the new point
        """
        if not (CALIB_COORD_MIN <= x <= CALIB_COORD_MAX and CALIB_COORD_MIN <= y <= CALIB_COORD_MAX):
            raise CalibrationError(f"X and Y must be {CALIB_COORD_MIN}-{CALIB_COORD_MAX}")
        with self._lock:
            phase = self._phase
            if not isinstance(phase, PositionInputPhase):
                raise CalibrationError("Calibration points can only be added after the baseline phase")
            if len(phase.points) >= self.max_calib_points:
                raise CalibrationError(f"Maximum calibration points reached ({self.max_calib_points})")
            phase.points.append(CalibrationPoint(x=x, y=y))
            phase.open_point = len(phase.points) - 1
            index = len(phase.points)
        logger.info(json.dumps({
            "event": "calib_point_opened",
            "point": index,
            "x": x,
            "y": y
        }))
        return index

    def clear_points(self):
        """CLEAR: drop every calibration point."""
        with self._lock:
            phase = self._phase
            if not isinstance(phase, PositionInputPhase):
                raise CalibrationError("CLEAR is only available during position calibration")
            phase.points.clear()
            phase.open_point = None
        logger.info(json.dumps({"event": "calib_points_cleared"}))

    def list_points(self) -> Tuple[CalibrationPointSnapshot, ...]:
        """Frozen copies of the recorded points."""
        return self.snapshot().points

    def start_running(self) -> int:
        """
        START: freeze everything and enter tracking mode.

        Returns:
            Number of calibration points carried into the running phase
        """
        with self._lock:
            phase = self._phase
            if not isinstance(phase, PositionInputPhase):
                raise CalibrationError("START is only available during position calibration")
            points = tuple(_freeze_point(p) for p in phase.points)
            baselines = {nid: vec.copy() for nid, vec in phase.baselines.items()}
            self._phase = RunningPhase(baselines=baselines, points=points)
        self._log_phase("running", calib_points=len(points))
        return len(points)

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    def process_reading(self, node_id: int, raw: np.ndarray) -> Optional[np.ndarray]:
        """
        Route one authenticated reading according to the current phase.

        Args:
            node_id: Reporting node
            raw: Raw field [x, y, z] in m-uT

        Returns:
            The node's ambient baseline if it is valid (after this reading), else None
        """
        if not self._valid_node(node_id):
            return None

        with self._lock:
            phase = self._phase

            if isinstance(phase, BaselinePhase):
                bd = phase.baselines[node_id]
                if not bd.valid:
                    completed = bd.add(raw, self.baseline_readings_required)
                    logger.info(json.dumps({
                        "event": "baseline_reading",
                        "node_id": node_id,
                        "reading": bd.readings_collected,
                        "required": self.baseline_readings_required,
                        "B": [int(v) for v in raw]
                    }))
                    if completed:
                        logger.info(json.dumps({
                            "event": "baseline_complete",
                            "node_id": node_id,
                            "B_ambient": [int(v) for v in bd.ambient]
                        }))
                return bd.ambient.copy() if bd.valid else None

            if isinstance(phase, PositionInputPhase):
                baseline = phase.baselines.get(node_id)
                if baseline is None:
                    return None
                if phase.open_point is not None:
                    point = phase.points[phase.open_point]
                    magnet_field = np.asarray(raw, dtype=np.int64) - baseline
                    contrib = point.contributions.get(node_id)
                    if contrib is None or not contrib.valid:
                        completed = point.add(node_id, magnet_field, self.calib_readings_per_point)
                        contrib = point.contributions[node_id]
                        logger.info(json.dumps({
                            "event": "calib_reading",
                            "point": phase.open_point + 1,
                            "node_id": node_id,
                            "reading": contrib.reading_count,
                            "required": self.calib_readings_per_point,
                            "B_mag": [int(v) for v in magnet_field]
                        }))
                        if completed:
                            logger.info(json.dumps({
                                "event": "calib_node_complete",
                                "point": phase.open_point + 1,
                                "node_id": node_id,
                                "B_mag": [int(v) for v in contrib.average]
                            }))
                return baseline.copy()

            if isinstance(phase, RunningPhase):
                baseline = phase.baselines.get(node_id)
                return baseline.copy() if baseline is not None else None

            return None

    def baseline_status(self) -> List[BaselineStatus]:
        """Per-node baseline progress (STATUS during baseline capture)."""
        with self._lock:
            phase = self._phase
            statuses = []
            for nid in range(1, self.max_nodes + 1):
                if isinstance(phase, BaselinePhase):
                    bd = phase.baselines[nid]
                    ambient = tuple(int(v) for v in bd.ambient) if bd.valid else None
                    statuses.append(BaselineStatus(
                        node_id=nid,
                        valid=bd.valid,
                        readings_collected=bd.readings_collected,
                        required=self.baseline_readings_required,
                        ambient=ambient
                    ))
                elif isinstance(phase, (PositionInputPhase, RunningPhase)):
                    vec = phase.baselines.get(nid)
                    statuses.append(BaselineStatus(
                        node_id=nid,
                        valid=vec is not None,
                        readings_collected=self.baseline_readings_required if vec is not None else 0,
                        required=self.baseline_readings_required,
                        ambient=tuple(int(v) for v in vec) if vec is not None else None
                    ))
                else:
                    statuses.append(BaselineStatus(
                        node_id=nid,
                        valid=False,
                        readings_collected=0,
                        required=self.baseline_readings_required,
                        ambient=None
                    ))
            return statuses

    def baseline_quorum(self) -> bool:
        """True once enough nodes have a valid baseline for DONE."""
        return sum(1 for s in self.baseline_status() if s.valid) >= MIN_BASELINE_NODES

    # ------------------------------------------------------------------

    def _new_baseline_phase(self) -> BaselinePhase:
        return BaselinePhase(baselines={
            nid: BaselineData() for nid in range(1, self.max_nodes + 1)
        })

    @staticmethod
    def _log_phase(phase: str, **fields):
        logger.info(json.dumps({
            "event": "phase_changed",
            "phase": phase,
            **fields
        }))
