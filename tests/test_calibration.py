"""
Tests for the calibration state machine and the operator console.
"""

import io

import numpy as np
import pytest

from misogate.calibration.console import (
    BASELINE_USAGE,
    CalibrationConsole,
    RUNNING_USAGE,
)
from misogate.calibration.state_machine import (
    CalibrationError,
    CalibrationStateMachine,
)
from misogate.datatypes.datatypes import BaselineData, div_trunc


def _feed_baseline(machine, node_id, field, count):
    for _ in range(count):
        machine.process_reading(node_id, np.array(field, dtype=np.int64))


@pytest.fixture
def machine():
    m = CalibrationStateMachine(baseline_readings_required=3, calib_readings_per_point=2, max_calib_points=3)
    m.begin()
    return m


@pytest.fixture
def position_machine(machine):
    _feed_baseline(machine, 1, (1000, 0, 0), 3)
    _feed_baseline(machine, 2, (0, 1000, 0), 3)
    machine.complete_baseline()
    return machine


# ----------------------------------------------------------------------
# Baseline
# ----------------------------------------------------------------------

def test_div_trunc_rounds_toward_zero():
    assert div_trunc(7, 2) == 3
    assert div_trunc(-7, 2) == -3
    assert div_trunc(-1, 3) == 0


def test_baseline_valid_exactly_at_required_count():
    bd = BaselineData()
    for i in range(9):
        assert not bd.add(np.array([i, -i, 1]), required=10)
        assert not bd.valid
    assert bd.add(np.array([9, -9, 1]), required=10)
    assert bd.valid
    # 45 / 10 truncates to 4, -45 / 10 to -4
    assert bd.ambient.tolist() == [4, -4, 1]


def test_baseline_ignores_readings_once_valid():
    bd = BaselineData()
    bd.add(np.array([10, 10, 10]), required=1)
    assert not bd.add(np.array([99, 99, 99]), required=1)
    assert bd.ambient.tolist() == [10, 10, 10]
    assert bd.readings_collected == 1


def test_process_reading_returns_baseline_once_valid(machine):
    assert machine.process_reading(1, np.array([10, 20, 30])) is None
    assert machine.process_reading(1, np.array([11, 21, 31])) is None
    baseline = machine.process_reading(1, np.array([12, 22, 32]))
    assert baseline.tolist() == [11, 21, 31]

    status = machine.baseline_status()
    assert status[0].valid and status[0].ambient == (11, 21, 31)
    assert not status[1].valid and status[1].readings_collected == 0


def test_out_of_range_node_ignored(machine):
    assert machine.process_reading(0, np.array([1, 1, 1])) is None
    assert machine.process_reading(5, np.array([1, 1, 1])) is None


def test_done_requires_two_nodes(machine):
    _feed_baseline(machine, 1, (1, 2, 3), 3)
    assert not machine.baseline_quorum()
    with pytest.raises(CalibrationError):
        machine.complete_baseline()
    assert machine.phase_name == "baseline"

    _feed_baseline(machine, 3, (1, 2, 3), 3)
    assert machine.baseline_quorum()
    assert machine.complete_baseline() == 2
    assert machine.phase_name == "position_input"
    assert sorted(machine.snapshot().baselines) == [1, 3]


def test_restart_clears_progress(machine):
    _feed_baseline(machine, 1, (1, 2, 3), 3)
    machine.restart_baseline()
    assert all(not s.valid and s.readings_collected == 0 for s in machine.baseline_status())


def test_begin_only_from_idle(machine):
    with pytest.raises(CalibrationError):
        machine.begin()


def test_idle_machine_ignores_readings():
    m = CalibrationStateMachine()
    assert m.phase_name == "idle"
    assert m.process_reading(1, np.array([1, 2, 3])) is None


# ----------------------------------------------------------------------
# Position calibration
# ----------------------------------------------------------------------

def test_point_accumulates_magnet_only_field(position_machine):
    m = position_machine
    assert m.open_point(250, 750) == 1

    m.process_reading(1, np.array([1300, 0, 0]))
    m.process_reading(1, np.array([1301, 0, 0]))
    m.process_reading(1, np.array([1500, 0, 0]))  # ignored, node 1 already complete
    m.process_reading(2, np.array([0, 1100, 0]))
    m.process_reading(3, np.array([5, 5, 5]))     # no baseline

    points = m.list_points()
    assert len(points) == 1
    assert (points[0].x, points[0].y) == (250, 750)
    assert points[0].node_fields[1].tolist() == [300, 0, 0]
    assert 2 not in points[0].node_fields      # only one reading so far
    assert 3 not in points[0].node_fields


def test_readings_without_open_point_are_not_recorded(position_machine):
    baseline = position_machine.process_reading(1, np.array([2000, 0, 0]))
    assert baseline.tolist() == [1000, 0, 0]
    assert position_machine.list_points() == ()


def test_point_coordinate_range(position_machine):
    with pytest.raises(CalibrationError):
        position_machine.open_point(-1, 10)
    with pytest.raises(CalibrationError):
        position_machine.open_point(10, 1001)
    assert position_machine.open_point(0, 1000) == 1


def test_max_points(position_machine):
    for i in range(3):
        position_machine.open_point(i, i)
    with pytest.raises(CalibrationError):
        position_machine.open_point(5, 5)


def test_clear_points(position_machine):
    position_machine.open_point(1, 1)
    position_machine.clear_points()
    assert position_machine.list_points() == ()
    assert position_machine.snapshot().open_point is None


def test_start_freezes_points(position_machine):
    m = position_machine
    m.open_point(100, 200)
    _feed_baseline(m, 1, (1200, 0, 0), 2)
    _feed_baseline(m, 2, (0, 900, 0), 2)

    assert m.start_running() == 1
    assert m.is_running()

    snap = m.snapshot()
    assert snap.phase == "running"
    assert snap.points[0].node_fields[2].tolist() == [0, -100, 0]

    # Baselines stay available, calibration no longer accumulates
    assert m.process_reading(1, np.array([5000, 0, 0])).tolist() == [1000, 0, 0]
    assert m.snapshot().points[0].node_fields[1].tolist() == [200, 0, 0]


def test_running_baselines_are_not_shared(position_machine):
    m = position_machine
    position_baselines = m.snapshot().baselines
    m.start_running()

    # Changing an earlier snapshot must not reach the frozen baselines
    position_baselines[1][:] = 0
    assert m.snapshot().baselines[1].tolist() == [1000, 0, 0]

    snap = m.snapshot()
    snap.baselines[2][0] = 12345
    assert m.snapshot().baselines[2].tolist() == [0, 1000, 0]
    assert m.process_reading(2, np.array([0, 1500, 0])).tolist() == [0, 1000, 0]


def test_commands_rejected_in_wrong_phase(machine):
    with pytest.raises(CalibrationError):
        machine.start_running()
    with pytest.raises(CalibrationError):
        machine.open_point(1, 1)
    with pytest.raises(CalibrationError):
        machine.clear_points()


# ----------------------------------------------------------------------
# Console
# ----------------------------------------------------------------------

def test_console_baseline_commands(machine):
    console = CalibrationConsole(machine)

    assert console.handle_line("status").startswith("Baseline Status:")
    assert console.handle_line("what") == BASELINE_USAGE
    assert console.handle_line("   ") == ""

    reply = console.handle_line("DONE")
    assert reply.startswith("Error:")
    assert "Sensor 1: waiting for data..." in reply

    _feed_baseline(machine, 1, (1, 1, 1), 1)
    assert "Sensor 1: 1/3 readings" in console.handle_line("STATUS")

    assert console.handle_line("restart").startswith("Baseline data cleared")


def test_console_full_procedure(machine):
    console = CalibrationConsole(machine, position_status=lambda: "x=1 y=2 (blend)")
    _feed_baseline(machine, 1, (1000, 0, 0), 3)
    _feed_baseline(machine, 2, (0, 1000, 0), 3)

    assert "Baseline calibration complete" in console.handle_line("Done")
    assert machine.phase_name == "position_input"

    assert console.handle_line("300 400").startswith("Calibrating point 1 at (300, 400)")
    assert console.handle_line("2000 5") == "Error: X and Y must be 0-1000"
    assert console.handle_line("hello").startswith("Unknown command: hello")
    assert console.handle_line("status").startswith("Position Calibration Points: 1")

    assert console.handle_line("start").startswith("STARTING TRACKING MODE")
    assert machine.is_running()

    assert console.handle_line("STATUS") == "Position: x=1 y=2 (blend)"
    assert console.handle_line("DONE") == RUNNING_USAGE


def test_console_input_loop_writes_responses(machine):
    output = io.StringIO()
    console = CalibrationConsole(machine, output=output)
    console._input_loop(io.StringIO("status\nbogus\n"))

    text = output.getvalue()
    assert "PHASE 1: BASELINE CALIBRATION" in text
    assert "Baseline Status:" in text
    assert BASELINE_USAGE in text
