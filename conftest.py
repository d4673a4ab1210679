"""
Shared pytest fixtures.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Make the repo root importable (bring-up script lives there)
repo_root = Path(__file__).parent.resolve()
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from misogate.datatypes.datatypes import SensorFrame, SensorLayout
from misogate.gateway.config import GatewayConfig
from misogate.secure_frame.codec import DEFAULT_MASTER_KEY, encode_frame


@pytest.fixture
def master_key() -> bytes:
    return DEFAULT_MASTER_KEY


@pytest.fixture
def layout() -> SensorLayout:
    """Field layout: three deployed sensors plus a fourth corner."""
    return GatewayConfig().layout()


@pytest.fixture
def make_frame(master_key):
    """Factory for encrypted frames: make_frame(node_id, seq, (x, y, z))."""
    def _make(node_id, seq, field, temp=215, key=None):
        frame = SensorFrame(
            node_id=node_id,
            seq=seq,
            x_milli_ut=int(field[0]),
            y_milli_ut=int(field[1]),
            z_milli_ut=int(field[2]),
            temp_c_times10=temp
        )
        return encode_frame(key or master_key, frame)
    return _make


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
