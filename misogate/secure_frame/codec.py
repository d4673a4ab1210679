"""
Secure frame codec (encrypt-then-MAC) with per-node replay protection.

Frame layout (28 bytes):
    [0]       node_id
    [1..4]    tx_seq (LE u32)
    [5..19]   ciphertext (15 bytes)
    [20..27]  SipHash tag over node_id || tx_seq || ciphertext

Plaintext layout (15 bytes):
    [0]       message type (0x01)
    [1..12]   x, y, z field (LE i32, milli-microtesla)
    [13..14]  temperature (LE i16, 0.1 degC)
"""

import hmac
import json
import logging
import struct
import threading
from typing import Optional

from misogate.datatypes.datatypes import SensorFrame
from .kdf import derive_subkeys, keystream
from .siphash import siphash24

logger = logging.getLogger(__name__)

MSG_TYPE_SENSOR = 0x01
SENSOR_PLAINTEXT_LEN = 15
TAG_LEN = 8
HEADER_LEN = 5
SECURE_FRAME_LEN = HEADER_LEN + SENSOR_PLAINTEXT_LEN + TAG_LEN

# Deployed master key shared with the nodes
DEFAULT_MASTER_KEY = bytes([
    0x4D, 0x69, 0x73, 0x6F, 0x4B, 0x65, 0x79, 0x21,
    0x10, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88
])

_PLAINTEXT = struct.Struct("<Biiih")
_HEADER = struct.Struct("<BI")


def pack_sensor_payload(frame: SensorFrame) -> bytes:
    """Pack the 15-byte plaintext payload."""
    return _PLAINTEXT.pack(
        MSG_TYPE_SENSOR,
        frame.x_milli_ut,
        frame.y_milli_ut,
        frame.z_milli_ut,
        frame.temp_c_times10
    )


def unpack_sensor_payload(plaintext: bytes, node_id: int, seq: int) -> Optional[SensorFrame]:
    """Unpack a decrypted payload, or None if the message type is wrong."""
    msg_type, x, y, z, temp = _PLAINTEXT.unpack(plaintext)
    if msg_type != MSG_TYPE_SENSOR:
        return None
    return SensorFrame(
        node_id=node_id,
        seq=seq,
        x_milli_ut=x,
        y_milli_ut=y,
        z_milli_ut=z,
        temp_c_times10=temp
    )


def _xor(data: bytes, stream: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, stream))


def encode_frame(master_key: bytes, frame: SensorFrame) -> bytes:
    """
    Build a secure frame the way a node does (encrypt, then MAC the ciphertext).

    Args:
        master_key: 16-byte master key
        frame: Reading to send

    Returns:
        28-byte wire frame
    """
    k_enc, k_mac = derive_subkeys(master_key, frame.node_id)
    header = _HEADER.pack(frame.node_id, frame.seq & 0xFFFFFFFF)
    plaintext = pack_sensor_payload(frame)
    ciphertext = _xor(plaintext, keystream(k_enc, frame.seq, SENSOR_PLAINTEXT_LEN))
    tag = siphash24(k_mac, header + ciphertext)
    return header + ciphertext + tag


class ReplayGuard:
    """Highest accepted sequence number per node id (0..255), process lifetime only."""

    def __init__(self):
        self._last_seq = [0] * 256
        self._lock = threading.Lock()

    def check_and_update(self, node_id: int, seq: int) -> bool:
        """Accept seq only if strictly greater than the last accepted one."""
        with self._lock:
            if seq <= self._last_seq[node_id]:
                return False
            self._last_seq[node_id] = seq
            return True

    def last_seq(self, node_id: int) -> int:
        with self._lock:
            return self._last_seq[node_id]


class SecureFrameDecoder:
    """
    Authenticates, replay-checks and decrypts inbound frames.
    Every failure yields None so the transport cannot tell rejection reasons apart.
    """

    def __init__(self, master_key: bytes = DEFAULT_MASTER_KEY):
        """
        Initialize the decoder.

        Args:
            master_key: 16-byte master key shared with the nodes
        """
        if len(master_key) != 16:
            raise ValueError(f"Master key must be 16 bytes, got {len(master_key)}")
        self._master_key = bytes(master_key)
        self.replay_guard = ReplayGuard()
        self.accepted = 0
        self.rejected = 0

    def decode(self, buffer: bytes) -> Optional[SensorFrame]:
        """
        Decode one radio payload.

        Args:
            buffer: Raw bytes from the radio (extra trailing bytes are ignored)

        Returns:
            SensorFrame on success, None on any rejection
        """
        frame = self._decode(bytes(buffer))
        if frame is None:
            self.rejected += 1
        else:
            self.accepted += 1
        return frame

    def _decode(self, buffer: bytes) -> Optional[SensorFrame]:
        if len(buffer) < SECURE_FRAME_LEN:
            self._log_reject("short_frame", length=len(buffer))
            return None

        node_id, seq = _HEADER.unpack_from(buffer, 0)
        header = buffer[:HEADER_LEN]
        ciphertext = buffer[HEADER_LEN:HEADER_LEN + SENSOR_PLAINTEXT_LEN]
        tag = buffer[HEADER_LEN + SENSOR_PLAINTEXT_LEN:SECURE_FRAME_LEN]

        k_enc, k_mac = derive_subkeys(self._master_key, node_id)

        # MAC check first; nothing is decrypted before this passes
        expected = siphash24(k_mac, header + ciphertext)
        if not hmac.compare_digest(expected, tag):
            self._log_reject("tag_mismatch", node_id=node_id)
            return None

        if not self.replay_guard.check_and_update(node_id, seq):
            self._log_reject("replay", node_id=node_id, seq=seq)
            return None

        plaintext = _xor(ciphertext, keystream(k_enc, seq, SENSOR_PLAINTEXT_LEN))
        frame = unpack_sensor_payload(plaintext, node_id, seq)
        if frame is None:
            self._log_reject("bad_msg_type", node_id=node_id)
        return frame

    @staticmethod
    def _log_reject(reason: str, **fields):
        logger.debug(json.dumps({
            "event": "frame_rejected",
            "reason": reason,
            **fields
        }))
