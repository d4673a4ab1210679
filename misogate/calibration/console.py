"""
Operator console for the calibration procedure.
Parses one line at a time and drives the state machine; all text goes to the
supplied output stream.
"""

import json
import logging
import re
import sys
import threading
from typing import Callable, List, Optional, TextIO

from .state_machine import (
    CalibrationError,
    CalibrationStateMachine,
    CALIB_COORD_MAX,
    CALIB_COORD_MIN,
)

logger = logging.getLogger(__name__)

_COORD_RE = re.compile(r"^\s*(-?\d+)\s+(-?\d+)\s*$")

BASELINE_USAGE = "Unknown command. Type STATUS, DONE, or RESTART."
POSITION_USAGE = "Enter 'X Y' coordinates, START, STATUS or CLEAR"
RUNNING_USAGE = "Tracking mode active. Type STATUS to show the current position."
IDLE_USAGE = "Calibration has not started yet."

BASELINE_HELP = """
==============================================
     PHASE 1: BASELINE CALIBRATION
==============================================

IMPORTANT: Remove the magnet from the tracking area!

Commands:
  STATUS  - Show baseline capture progress
  DONE    - Finish baseline calibration
  RESTART - Clear and restart baseline capture

Wait until at least two sensors show READY, then type DONE.
=============================================="""

POSITION_HELP = f"""
==============================================
     PHASE 2: POSITION CALIBRATION (OPTIONAL)
==============================================

Place the MAGNET at known positions and enter coordinates.

Commands:
  X Y     - Calibrate at position (X,Y), X and Y in {CALIB_COORD_MIN}-{CALIB_COORD_MAX}
  START   - Skip/finish calibration, begin tracking mode
  STATUS  - Show current calibration points
  CLEAR   - Clear all calibration points
=============================================="""


class CalibrationConsole:
    """
    Line-oriented operator interface.
    `handle_line` is pure dispatch and returns the response text, so it can be
    driven from a terminal thread or from tests.
    """

    def __init__(
        self,
        machine: CalibrationStateMachine,
        position_status: Optional[Callable[[], str]] = None,
        output: Optional[TextIO] = None
    ):
        """
        Initialize the console.

        Args:
            machine: Calibration state machine to drive
            position_status: Callable describing the current position (running phase)
            output: Stream for operator text (defaults to stdout)
        """
        self.machine = machine
        self.position_status = position_status or (lambda: "unavailable")
        self.output = output or sys.stdout
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------

    def handle_line(self, line: str) -> str:
        """Dispatch one operator line and return the response."""
        cmd = line.strip()
        if not cmd:
            return ""
        upper = cmd.upper()
        phase = self.machine.phase_name

        try:
            if phase == "baseline":
                return self._handle_baseline(upper)
            if phase == "position_input":
                return self._handle_position(upper, cmd)
            if phase == "running":
                if upper.startswith("STATUS"):
                    return f"Position: {self.position_status()}"
                return RUNNING_USAGE
            return IDLE_USAGE
        except CalibrationError as e:
            logger.info(json.dumps({
                "event": "command_rejected",
                "phase": phase,
                "command": cmd,
                "reason": str(e)
            }))
            return f"Error: {e}"

    def _handle_baseline(self, upper: str) -> str:
        if upper.startswith("STATUS"):
            return self.format_baseline_status()
        if upper.startswith("DONE"):
            try:
                self.machine.complete_baseline()
            except CalibrationError as e:
                return f"Error: {e}\n{self.format_baseline_status()}"
            return "*** Baseline calibration complete! ***\n" + POSITION_HELP
        if upper.startswith("RESTART"):
            self.machine.restart_baseline()
            return "Baseline data cleared. Restarting capture..."
        return BASELINE_USAGE

    def _handle_position(self, upper: str, cmd: str) -> str:
        if upper.startswith("START"):
            count = self.machine.start_running()
            lines = ["STARTING TRACKING MODE"]
            if count > 0:
                lines.append(f"  {count} position calibration points loaded")
            else:
                lines.append("  No calibration points, using live estimators only")
            return "\n".join(lines)
        if upper.startswith("STATUS"):
            return self.format_points()
        if upper.startswith("CLEAR"):
            self.machine.clear_points()
            return "Calibration points cleared."

        match = _COORD_RE.match(cmd)
        if match:
            x, y = int(match.group(1)), int(match.group(2))
            index = self.machine.open_point(x, y)
            return (
                f"Calibrating point {index} at ({x}, {y})...\n"
                f"Place MAGNET at this position now.\n"
                f"(Need {self.machine.calib_readings_per_point} readings per sensor)"
            )
        return f"Unknown command: {cmd}\n{POSITION_USAGE}"

    # ------------------------------------------------------------------

    def format_baseline_status(self) -> str:
        lines: List[str] = ["Baseline Status:"]
        for status in self.machine.baseline_status():
            if status.valid:
                lines.append(f"  Sensor {status.node_id}: READY  B_ambient={status.ambient} m-uT")
            elif status.readings_collected > 0:
                lines.append(f"  Sensor {status.node_id}: {status.readings_collected}/{status.required} readings")
            else:
                lines.append(f"  Sensor {status.node_id}: waiting for data...")
        return "\n".join(lines)

    def format_points(self) -> str:
        points = self.machine.list_points()
        lines = [f"Position Calibration Points: {len(points)}"]
        for i, point in enumerate(points, start=1):
            fields = " ".join(
                f"S{nid}:({int(v[0])},{int(v[1])},{int(v[2])})"
                for nid, v in sorted(point.node_fields.items())
            )
            lines.append(f"  Point {i}: ({point.x}, {point.y}) -> {fields}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Terminal loop
    # ------------------------------------------------------------------

    def start(self, input_stream: Optional[TextIO] = None):
        """Read operator lines on a daemon thread."""
        self._thread = threading.Thread(
            target=self._input_loop,
            args=(input_stream or sys.stdin,),
            daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()

    def _input_loop(self, input_stream: TextIO):
        self._write(BASELINE_HELP)
        while not self._stop_event.is_set():
            line = input_stream.readline()
            if not line:
                # EOF, nothing more to read
                break
            try:
                response = self.handle_line(line)
            except Exception as e:
                logger.error(json.dumps({
                    "event": "console_error",
                    "error": str(e)
                }))
                continue
            if response:
                self._write(response)

    def _write(self, text: str):
        self.output.write(text + "\n> ")
        self.output.flush()
