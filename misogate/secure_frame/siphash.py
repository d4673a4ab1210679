"""
SipHash-2-4 keyed hash (64-bit output, 128-bit key).
Used both as the frame MAC and as the keystream PRF, so it must stay bit-exact
with the node firmware.
"""

import struct

_MASK = 0xFFFFFFFFFFFFFFFF


def _rotl(x: int, b: int) -> int:
    return ((x << b) | (x >> (64 - b))) & _MASK


def _sipround(v0: int, v1: int, v2: int, v3: int):
    v0 = (v0 + v1) & _MASK
    v1 = _rotl(v1, 13) ^ v0
    v0 = _rotl(v0, 32)
    v2 = (v2 + v3) & _MASK
    v3 = _rotl(v3, 16) ^ v2
    v0 = (v0 + v3) & _MASK
    v3 = _rotl(v3, 21) ^ v0
    v2 = (v2 + v1) & _MASK
    v1 = _rotl(v1, 17) ^ v2
    v2 = _rotl(v2, 32)
    return v0, v1, v2, v3


def siphash24(key: bytes, message: bytes) -> bytes:
    """
    Compute SipHash-2-4 of a message.

    Args:
        key: 16-byte key
        message: Arbitrary-length message

    Returns:
        8-byte tag (little-endian encoding of the 64-bit output)
    """
    if len(key) != 16:
        raise ValueError(f"SipHash key must be 16 bytes, got {len(key)}")

    k0, k1 = struct.unpack("<QQ", key)
    v0 = 0x736F6D6570736575 ^ k0
    v1 = 0x646F72616E646F6D ^ k1
    v2 = 0x6C7967656E657261 ^ k0
    v3 = 0x7465646279746573 ^ k1

    length = len(message)
    end = length - (length % 8)

    for offset in range(0, end, 8):
        mi = struct.unpack_from("<Q", message, offset)[0]
        v3 ^= mi
        v0, v1, v2, v3 = _sipround(v0, v1, v2, v3)
        v0, v1, v2, v3 = _sipround(v0, v1, v2, v3)
        v0 ^= mi

    # Final block: trailing bytes plus the length in the top byte
    b = (length & 0xFF) << 56
    for i, byte in enumerate(message[end:]):
        b |= byte << (8 * i)

    v3 ^= b
    v0, v1, v2, v3 = _sipround(v0, v1, v2, v3)
    v0, v1, v2, v3 = _sipround(v0, v1, v2, v3)
    v0 ^= b
    v2 ^= 0xFF
    for _ in range(4):
        v0, v1, v2, v3 = _sipround(v0, v1, v2, v3)

    return struct.pack("<Q", v0 ^ v1 ^ v2 ^ v3)
