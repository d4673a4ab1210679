"""
Tests for SipHash, subkey derivation and the secure frame codec.
"""

import struct

import pytest

from misogate.datatypes.datatypes import SensorFrame
from misogate.secure_frame.codec import (
    SECURE_FRAME_LEN,
    SecureFrameDecoder,
    ReplayGuard,
    encode_frame,
    pack_sensor_payload,
    unpack_sensor_payload,
)
from misogate.secure_frame.kdf import derive_subkeys, keystream
from misogate.secure_frame.siphash import siphash24


REF_KEY = bytes(range(16))


def test_siphash_reference_vectors():
    assert siphash24(REF_KEY, b"") == bytes.fromhex("310e0edd47db6f72")
    assert siphash24(REF_KEY, bytes(range(15))) == bytes.fromhex("e545be4961ca29a1")


def test_siphash_rejects_bad_key_length():
    with pytest.raises(ValueError):
        siphash24(b"short", b"data")


def test_subkeys_are_distinct_per_node_and_purpose(master_key):
    enc1, mac1 = derive_subkeys(master_key, 1)
    enc2, mac2 = derive_subkeys(master_key, 2)

    assert len(enc1) == len(mac1) == 16
    assert enc1 != mac1
    assert enc1 != enc2
    assert mac1 != mac2
    assert derive_subkeys(master_key, 1) == (enc1, mac1)


def test_subkey_halves_follow_label_layout(master_key):
    k_enc, k_mac = derive_subkeys(master_key, 3)
    label = b"ENC" + bytes([3]) + b"\x00\x01"

    assert k_enc[:8] == siphash24(master_key, label)
    assert k_enc[8:] == siphash24(master_key, label + b"\xa5")
    assert k_mac[:8] == siphash24(master_key, b"MAC\x03\x00\x01")


def test_keystream_blocks(master_key):
    k_enc, _ = derive_subkeys(master_key, 1)
    stream = keystream(k_enc, 7, 15)

    assert len(stream) == 15
    assert stream[:8] == siphash24(k_enc, b"S" + struct.pack("<II", 7, 0))
    assert stream[8:] == siphash24(k_enc, b"S" + struct.pack("<II", 7, 1))[:7]
    assert keystream(k_enc, 8, 15) != stream


def test_roundtrip(master_key):
    frame = SensorFrame(node_id=2, seq=41, x_milli_ut=-12345, y_milli_ut=678, z_milli_ut=45000, temp_c_times10=-55)
    wire = encode_frame(master_key, frame)

    assert len(wire) == SECURE_FRAME_LEN
    assert wire[0] == 2
    assert struct.unpack_from("<I", wire, 1)[0] == 41

    decoder = SecureFrameDecoder(master_key)
    assert decoder.decode(wire) == frame
    assert decoder.accepted == 1


@pytest.mark.parametrize("temp", [-32768, -55, 0, 215, 32767])
def test_payload_temperature_is_signed_16_bit(temp):
    frame = SensorFrame(node_id=3, seq=9, x_milli_ut=1, y_milli_ut=-2, z_milli_ut=3, temp_c_times10=temp)

    plaintext = pack_sensor_payload(frame)

    assert len(plaintext) == 15
    assert plaintext[13:] == struct.pack("<h", temp)
    assert unpack_sensor_payload(plaintext, node_id=3, seq=9) == frame


def test_payload_temperature_out_of_range():
    frame = SensorFrame(node_id=3, seq=9, x_milli_ut=0, y_milli_ut=0, z_milli_ut=0, temp_c_times10=40000)
    with pytest.raises(struct.error):
        pack_sensor_payload(frame)


def test_ciphertext_hides_plaintext(master_key):
    frame = SensorFrame(node_id=1, seq=1, x_milli_ut=0, y_milli_ut=0, z_milli_ut=0, temp_c_times10=0)
    wire = encode_frame(master_key, frame)
    assert wire[5:20] != bytes([0x01]) + bytes(14)


def test_single_bit_flips_rejected(make_frame, master_key):
    wire = make_frame(1, 10, (100, 200, 300))
    decoder = SecureFrameDecoder(master_key)

    for byte_index in range(5, SECURE_FRAME_LEN):
        for bit in range(8):
            tampered = bytearray(wire)
            tampered[byte_index] ^= 1 << bit
            assert decoder.decode(bytes(tampered)) is None, (byte_index, bit)

    # Rejections never advanced the replay counter
    assert decoder.decode(wire) is not None


def test_header_tampering_rejected(make_frame, master_key):
    wire = bytearray(make_frame(1, 10, (100, 200, 300)))
    decoder = SecureFrameDecoder(master_key)

    wrong_node = bytearray(wire)
    wrong_node[0] = 2
    assert decoder.decode(bytes(wrong_node)) is None

    wrong_seq = bytearray(wire)
    wrong_seq[1] ^= 0x01
    assert decoder.decode(bytes(wrong_seq)) is None


def test_wrong_key_rejected(make_frame, master_key):
    wire = make_frame(1, 1, (1, 2, 3), key=bytes(16))
    assert SecureFrameDecoder(master_key).decode(wire) is None


def test_short_frame_rejected(make_frame, master_key):
    decoder = SecureFrameDecoder(master_key)
    wire = make_frame(1, 1, (1, 2, 3))

    assert decoder.decode(wire[:-1]) is None
    assert decoder.decode(b"") is None
    assert decoder.rejected == 2


def test_trailing_bytes_ignored(make_frame, master_key):
    wire = make_frame(1, 1, (1, 2, 3))
    frame = SecureFrameDecoder(master_key).decode(wire + b"\x00\xff")
    assert frame is not None
    assert frame.x_milli_ut == 1


def test_unknown_message_type_rejected(master_key):
    node_id, seq = 1, 5
    k_enc, k_mac = derive_subkeys(master_key, node_id)
    header = struct.pack("<BI", node_id, seq)
    plaintext = struct.pack("<Biiih", 0x02, 1, 2, 3, 4)
    ciphertext = bytes(a ^ b for a, b in zip(plaintext, keystream(k_enc, seq, 15)))
    wire = header + ciphertext + siphash24(k_mac, header + ciphertext)

    assert SecureFrameDecoder(master_key).decode(wire) is None


@pytest.mark.parametrize("first,second,accepted", [
    (5, 5, False),
    (5, 6, True),
    (5, 7, True),
    (7, 6, False),
])
def test_replay_window(make_frame, master_key, first, second, accepted):
    decoder = SecureFrameDecoder(master_key)
    assert decoder.decode(make_frame(1, first, (0, 0, 0))) is not None
    assert (decoder.decode(make_frame(1, second, (0, 0, 0))) is not None) == accepted


def test_replay_counters_are_per_node(make_frame, master_key):
    decoder = SecureFrameDecoder(master_key)
    assert decoder.decode(make_frame(1, 100, (0, 0, 0))) is not None
    assert decoder.decode(make_frame(2, 1, (0, 0, 0))) is not None
    assert decoder.replay_guard.last_seq(1) == 100
    assert decoder.replay_guard.last_seq(2) == 1


def test_replay_guard_rejects_zero():
    guard = ReplayGuard()
    assert not guard.check_and_update(4, 0)
    assert guard.check_and_update(4, 1)


def test_decoder_requires_16_byte_key():
    with pytest.raises(ValueError):
        SecureFrameDecoder(b"\x00" * 8)
