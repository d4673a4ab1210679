"""
LoRa radio adapters.
"""

from .radio import RadioInterface, QueueRadio, MAX_PAYLOAD_LEN
from .serial_radio import SerialLoRaRadio, SerialRadioConfig, parse_rcv_line

__all__ = [
    'RadioInterface',
    'QueueRadio',
    'MAX_PAYLOAD_LEN',
    'SerialLoRaRadio',
    'SerialRadioConfig',
    'parse_rcv_line',
]
