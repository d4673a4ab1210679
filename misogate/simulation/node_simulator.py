"""
Simulated magnetometer nodes for testing and demos without hardware.
Generates encrypted sensor frames from the dipole forward model plus a
per-node ambient field and Gaussian noise, and delivers them to a QueueRadio.
"""

import json
import logging
import math
import threading
import time
from typing import Dict, Optional, Tuple

import numpy as np

from misogate.datatypes.datatypes import SensorFrame, SensorLayout
from misogate.localization_algos.dipole.model import dipole_field
from misogate.lora_radio.radio import QueueRadio
from misogate.secure_frame.codec import DEFAULT_MASTER_KEY, encode_frame

logger = logging.getLogger(__name__)

DEFAULT_MAGNET_MOMENT = 5e10
DEFAULT_TEMP_C_TIMES10 = 225

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


def _default_ambient(node_id: int) -> np.ndarray:
    # Roughly earth-field sized, different per node
    return np.array([18000 + 500 * node_id, -4000 - 250 * node_id, 42000 + 100 * node_id], dtype=float)


class SimulatedNodeNetwork:
    """
    Set of sensor nodes observing one magnet.
    Each node keeps its own transmit counter, like the real firmware.
    """

    def __init__(
        self,
        layout: SensorLayout,
        radio: QueueRadio,
        master_key: bytes = DEFAULT_MASTER_KEY,
        magnet_moment: float = DEFAULT_MAGNET_MOMENT,
        noise_std: float = 0.0,
        ambient: Optional[Dict[int, np.ndarray]] = None,
        seed: Optional[int] = None
    ):
        """
        Initialize the simulated network.

        Args:
            layout: Sensor layout (positions, magnet height, orientation)
            radio: Radio receiving the generated frames
            master_key: Shared 16-byte key
            magnet_moment: Dipole moment scale M
            noise_std: Per-axis Gaussian noise (m-uT)
            ambient: Per-node ambient field, defaults to distinct earth-like fields
            seed: RNG seed for reproducible noise
        """
        self.layout = layout
        self.radio = radio
        self.master_key = master_key
        self.magnet_moment = magnet_moment
        self.noise_std = noise_std
        self.ambient = {
            nid: np.asarray((ambient or {}).get(nid, _default_ambient(nid)), dtype=float)
            for nid in layout.positions
        }
        self._rng = np.random.default_rng(seed)
        self._seq: Dict[int, int] = {nid: 0 for nid in layout.positions}

        # Magnet position, None when the magnet is out of the area
        self.magnet_xy: Optional[Tuple[float, float]] = None
        self._magnet_lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------

    def set_magnet(self, xy: Optional[Tuple[float, float]]):
        with self._magnet_lock:
            self.magnet_xy = xy

    def reading(self, node_id: int, magnet_xy: Optional[Tuple[float, float]]) -> np.ndarray:
        """Field seen by one node (m-uT, float)."""
        field = self.ambient[node_id].copy()
        if magnet_xy is not None:
            field += dipole_field(
                magnet_xy[0],
                magnet_xy[1],
                self.magnet_moment,
                self.layout.get_position(node_id),
                self.layout.magnet_height_z0,
                self.layout.m_hat
            )
        if self.noise_std > 0:
            field += self._rng.normal(0.0, self.noise_std, size=3)
        return field

    def make_frame(self, node_id: int, magnet_xy: Optional[Tuple[float, float]]) -> bytes:
        """Encrypted frame for the node's next reading."""
        field = np.clip(np.rint(self.reading(node_id, magnet_xy)), INT32_MIN, INT32_MAX).astype(np.int64)
        self._seq[node_id] += 1
        frame = SensorFrame(
            node_id=node_id,
            seq=self._seq[node_id],
            x_milli_ut=int(field[0]),
            y_milli_ut=int(field[1]),
            z_milli_ut=int(field[2]),
            temp_c_times10=DEFAULT_TEMP_C_TIMES10
        )
        return encode_frame(self.master_key, frame)

    def emit_round(self, magnet_xy: Optional[Tuple[float, float]] = None, rssi: int = -60, snr: int = 9) -> int:
        """
        Every node transmits one frame.

        Returns:
            Number of frames delivered
        """
        for node_id in sorted(self.layout.positions):
            self.radio.deliver(self.make_frame(node_id, magnet_xy), rssi=rssi, snr=snr)
        return len(self.layout.positions)

    # ------------------------------------------------------------------
    # Background simulation
    # ------------------------------------------------------------------

    @staticmethod
    def figure_eight(t: float, speed: float = 0.2) -> Tuple[float, float]:
        """Lissajous path covering the 1000 x 1000 area with a margin."""
        s = t * speed
        x = 500 + 350 * math.sin(s)
        y = 500 + 350 * math.sin(2 * s)
        return x, y

    def start(self, interval_s: float = 0.5, follow_path: bool = False):
        """
        Transmit rounds on a daemon thread.

        Args:
            interval_s: Seconds between rounds
            follow_path: Move the magnet along the figure-eight path
        """
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._simulation_loop,
            args=(interval_s, follow_path),
            daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def _simulation_loop(self, interval_s: float, follow_path: bool):
        logger.info(json.dumps({
            "event": "simulation_started",
            "nodes": sorted(self.layout.positions),
            "interval_s": interval_s
        }))
        start_time = time.time()

        while not self._stop_event.is_set():
            if follow_path:
                with self._magnet_lock:
                    if self.magnet_xy is not None:
                        self.magnet_xy = self.figure_eight(time.time() - start_time)
            with self._magnet_lock:
                magnet_xy = self.magnet_xy

            self.emit_round(magnet_xy)
            self._stop_event.wait(interval_s)

        logger.info(json.dumps({"event": "simulation_stopped"}))
