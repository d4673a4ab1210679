"""
Tests for the gateway context, configuration and the simulated end-to-end path.
"""

import io
import threading
import time

import numpy as np
import pytest

from misogate.calibration.console import CalibrationConsole
from misogate.datatypes.datatypes import ReceivedPacket
from misogate.gateway.config import GatewayConfig
from misogate.gateway.context import GatewayContext
from misogate.lora_radio.radio import QueueRadio
from misogate.secure_frame.codec import SecureFrameDecoder
from misogate.simulation.node_simulator import SimulatedNodeNetwork


class FrameSource:
    """Per-node sequence bookkeeping for hand-built frames."""

    def __init__(self, make_frame):
        self.make_frame = make_frame
        self.seq = {}

    def packet(self, node_id, field):
        self.seq[node_id] = self.seq.get(node_id, 0) + 1
        return ReceivedPacket(payload=self.make_frame(node_id, self.seq[node_id], field), rssi=-50, snr=8)


@pytest.fixture
def source(make_frame):
    return FrameSource(make_frame)


def _run_baseline(ctx, source, nodes, field, count):
    ctx.calibration.begin()
    for _ in range(count):
        for nid in nodes:
            ctx.handle_packet(source.packet(nid, field))


# ----------------------------------------------------------------------
# Context
# ----------------------------------------------------------------------

def test_end_to_end_strongest_node_wins(source):
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=20))
    _run_baseline(ctx, source, (1, 2), (1000, 0, 0), 20)

    assert ctx.node_state(1).have_baseline
    assert ctx.calibration.snapshot().baselines[1].tolist() == [1000, 0, 0]
    assert ctx.calibration.complete_baseline() == 2
    assert ctx.calibration.start_running() == 0

    ctx.handle_packet(source.packet(1, (1300, 0, 0)))
    estimate = ctx.handle_packet(source.packet(2, (1000, 0, 0)))

    assert estimate is not None
    assert estimate.as_xy() == (500, 1000)

    snap = ctx.snapshot()
    assert snap.running
    assert snap.position_available
    assert snap.frames_accepted == 42
    assert ctx.describe_position() == "x=500 y=1000 (triangulation)"

    node1 = ctx.node_state(1)
    assert node1.last_magnet_field.tolist() == [300, 0, 0]
    assert node1.last_magnitude == 300
    assert node1.last_rssi == -50


def test_no_estimate_before_running(source):
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=2))
    _run_baseline(ctx, source, (1, 2), (10, 10, 10), 2)

    assert ctx.handle_packet(source.packet(1, (9000, 0, 0))) is None
    assert ctx.snapshot().position is None
    assert ctx.describe_position() == "unavailable"


def test_position_unavailable_when_no_signal(source):
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=2))
    _run_baseline(ctx, source, (1, 2), (10, 10, 10), 2)
    ctx.calibration.complete_baseline()
    ctx.calibration.start_running()

    assert ctx.handle_packet(source.packet(1, (12, 10, 10))) is None
    snap = ctx.snapshot()
    assert snap.running and not snap.position_available


def test_rejected_frames_are_counted(source, make_frame):
    ctx = GatewayContext()
    ctx.calibration.begin()

    good = source.packet(1, (1, 2, 3))
    assert ctx.handle_packet(good) is None
    # replayed frame
    assert ctx.handle_packet(good) is None
    # truncated frame
    assert ctx.handle_packet(ReceivedPacket(payload=good.payload[:10])) is None

    snap = ctx.snapshot()
    assert snap.frames_accepted == 1
    assert snap.frames_rejected == 2
    assert ctx.node_state(1).last_seq == 1


def test_unexpected_node_ignored(make_frame):
    ctx = GatewayContext()
    ctx.calibration.begin()
    ctx.handle_packet(ReceivedPacket(payload=make_frame(9, 1, (1, 2, 3))))
    assert all(s.readings_collected == 0 for s in ctx.calibration.baseline_status())


def test_node_without_baseline_has_no_magnet_field(source):
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=5))
    ctx.calibration.begin()
    ctx.handle_packet(source.packet(3, (100, 200, 300)))

    state = ctx.node_state(3)
    assert not state.have_baseline
    assert state.last_raw.tolist() == [100, 200, 300]
    assert state.last_magnet_field.tolist() == [0, 0, 0]


def test_estimate_dipole_needs_two_nodes():
    ctx = GatewayContext()
    assert ctx.estimate_dipole() is None


def test_ingestion_and_console_threads_share_context(source):
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=5, calib_readings_per_point=2))
    ctx.calibration.begin()
    console = CalibrationConsole(ctx.calibration, position_status=ctx.describe_position, output=io.StringIO())

    packets = []
    for _ in range(300):
        for nid, field in ((1, (1000, 0, 0)), (2, (0, 1000, 0)), (3, (0, 0, 1000))):
            packets.append(source.packet(nid, field))

    errors = []
    ingest_done = threading.Event()

    def ingest():
        try:
            for packet in packets:
                ctx.handle_packet(packet)
                ctx.snapshot()
        except Exception as e:
            errors.append(e)
        finally:
            ingest_done.set()

    def operate():
        try:
            deadline = time.time() + 5.0
            while ctx.calibration.phase_name == "baseline" and time.time() < deadline:
                console.handle_line("STATUS")
                console.handle_line("DONE")
            console.handle_line("250 250")
            console.handle_line("STATUS")
            console.handle_line("START")
            while not ingest_done.is_set() and time.time() < deadline:
                console.handle_line("STATUS")
                ctx.describe_position()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=ingest), threading.Thread(target=operate)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10.0)

    assert not any(t.is_alive() for t in threads)
    assert errors == []
    assert ctx.decoder.accepted == len(packets)
    assert ctx.decoder.rejected == 0
    assert ctx.calibration.is_running()
    assert ctx.calibration.snapshot().baselines[1].tolist() == [1000, 0, 0]

    # Context is still consistent once both threads are done
    ctx.handle_packet(source.packet(2, (0, 1000, 0)))
    ctx.handle_packet(source.packet(3, (0, 0, 1000)))
    estimate = ctx.handle_packet(source.packet(1, (1400, 0, 0)))
    assert estimate is not None
    assert estimate.as_xy() == (500, 1000)
    assert console.handle_line("STATUS") == "Position: x=500 y=1000 (triangulation)"


# ----------------------------------------------------------------------
# Config
# ----------------------------------------------------------------------

def test_default_config_layout():
    config = GatewayConfig()
    layout = config.layout()
    assert layout.get_position(1).tolist() == [500.0, 1000.0, 0.0]
    assert layout.get_position(3).tolist() == [0.0, 0.0, 0.0]
    assert layout.m_hat.tolist() == [0.0, 0.0, 1.0]
    assert config.publish_interval_s == 1.0


def test_config_from_env():
    env = {
        "MISOGATE_MASTER_KEY": "00112233445566778899aabbccddeeff",
        "MISOGATE_SENSOR_POSITIONS": '{"1": [0, 0, 0], "2": [10, 0, 0]}',
        "MISOGATE_METHOD": "dipole",
        "MISOGATE_BASELINE_READINGS": "20",
        "MISOGATE_DIPOLE_ORIENTATION": "0,1,0",
    }
    config = GatewayConfig.from_env(env, publish_interval_s=2.0)

    assert config.master_key == bytes.fromhex("00112233445566778899aabbccddeeff")
    assert config.sensor_positions == {1: (0.0, 0.0, 0.0), 2: (10.0, 0.0, 0.0)}
    assert config.estimation_method == "dipole"
    assert config.baseline_readings_required == 20
    assert config.dipole_orientation == (0.0, 1.0, 0.0)
    assert config.publish_interval_s == 2.0


@pytest.mark.parametrize("kwargs", [
    {"master_key": b"short"},
    {"estimation_method": "kalman"},
    {"dipole_orientation": (0.0, 1.0)},
    {"sensor_positions": {7: (0.0, 0.0, 0.0)}},
])
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        GatewayConfig(**kwargs)


# ----------------------------------------------------------------------
# Simulated nodes
# ----------------------------------------------------------------------

def test_simulated_frames_decode(layout, master_key):
    radio = QueueRadio()
    network = SimulatedNodeNetwork(layout, radio, master_key=master_key, ambient={1: np.array([100.0, 200.0, 300.0])})
    assert network.emit_round() == 4

    decoder = SecureFrameDecoder(master_key)
    frames = [decoder.decode(radio.receive(timeout=0.1).payload) for _ in range(4)]

    assert [f.node_id for f in frames] == [1, 2, 3, 4]
    assert frames[0].field_vector.tolist() == [100, 200, 300]
    assert all(f.seq == 1 for f in frames)


def test_simulated_tracking_end_to_end(layout, master_key):
    radio = QueueRadio()
    network = SimulatedNodeNetwork(layout, radio, master_key=master_key, noise_std=5.0, seed=7)
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=10))

    def pump():
        while radio.pending():
            ctx.handle_packet(radio.receive(timeout=0.1))

    ctx.calibration.begin()
    for _ in range(10):
        network.emit_round()
    pump()
    assert ctx.calibration.complete_baseline() == 4
    ctx.calibration.start_running()

    network.emit_round((500.0, 900.0))
    pump()

    x, y = ctx.snapshot().position.as_xy()
    assert abs(x - 500) < 50
    assert y > 850


def test_simulated_dipole_tracking_follows_magnet(layout, master_key):
    radio = QueueRadio()
    network = SimulatedNodeNetwork(layout, radio, master_key=master_key)
    ctx = GatewayContext(GatewayConfig(baseline_readings_required=10, estimation_method="dipole"))

    def pump():
        estimate = None
        while radio.pending():
            estimate = ctx.handle_packet(radio.receive(timeout=0.1))
        return estimate

    ctx.calibration.begin()
    for _ in range(10):
        network.emit_round()
    pump()
    ctx.calibration.complete_baseline()
    ctx.calibration.start_running()

    for magnet in ((620.0, 380.0), (180.0, 760.0), (830.0, 870.0)):
        network.emit_round(magnet)
        estimate = pump()

        assert estimate.method == "dipole"
        assert estimate.converged
        assert estimate.x == pytest.approx(magnet[0], abs=3.0)
        assert estimate.y == pytest.approx(magnet[1], abs=3.0)
        assert ctx.estimate_dipole().x == pytest.approx(estimate.x, abs=0.5)
