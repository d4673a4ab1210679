"""
Per-node subkey derivation and keystream generation.
Labels and domain separators are protocol constants shared with the nodes.
"""

import struct
from typing import Tuple

from .siphash import siphash24

KDF_VERSION = b"\x00\x01"
KDF_DOMAIN_SEPARATOR = 0xA5
KEYSTREAM_TAG = b"S"


def _sip_to_16(key: bytes, label: bytes) -> bytes:
    """Stretch one label into 16 bytes with two SipHash calls."""
    first = siphash24(key, label)
    second = siphash24(key, label + bytes([KDF_DOMAIN_SEPARATOR]))
    return first + second


def derive_subkeys(master_key: bytes, node_id: int) -> Tuple[bytes, bytes]:
    """
    Derive the encryption and MAC subkeys for a node.

    Args:
        master_key: 16-byte master key
        node_id: Node identifier (0..255)

    Returns:
        (k_enc, k_mac), 16 bytes each
    """
    if not 0 <= node_id <= 0xFF:
        raise ValueError(f"node_id must fit in one byte, got {node_id}")
    label_enc = b"ENC" + bytes([node_id]) + KDF_VERSION
    label_mac = b"MAC" + bytes([node_id]) + KDF_VERSION
    return _sip_to_16(master_key, label_enc), _sip_to_16(master_key, label_mac)


def keystream(k_enc: bytes, seq: int, length: int) -> bytes:
    """
    Generate `length` keystream bytes for a sequence number.
    Block i is SipHash(k_enc, 'S' || seq_le32 || i_le32).
    """
    out = bytearray()
    block = 0
    while len(out) < length:
        out += siphash24(k_enc, KEYSTREAM_TAG + struct.pack("<II", seq & 0xFFFFFFFF, block))
        block += 1
    return bytes(out[:length])
