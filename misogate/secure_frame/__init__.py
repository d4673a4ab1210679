"""
Authenticated-encryption transport for sensor frames.
"""

from .siphash import siphash24
from .kdf import derive_subkeys, keystream
from .codec import (
    SECURE_FRAME_LEN,
    DEFAULT_MASTER_KEY,
    encode_frame,
    ReplayGuard,
    SecureFrameDecoder,
)

__all__ = [
    'siphash24',
    'derive_subkeys',
    'keystream',
    'SECURE_FRAME_LEN',
    'DEFAULT_MASTER_KEY',
    'encode_frame',
    'ReplayGuard',
    'SecureFrameDecoder',
]
