"""
Radio abstraction for the gateway ingestion loop.
"""

import queue
from abc import ABC, abstractmethod
from typing import Optional

from misogate.datatypes.datatypes import ReceivedPacket

MAX_PAYLOAD_LEN = 64


class RadioInterface(ABC):
    """Blocking packet source (and optional sink) used by the ingestion loop."""

    @abstractmethod
    def receive(self, timeout: float) -> Optional[ReceivedPacket]:
        """
        Wait for one packet.

        Args:
            timeout: Seconds to wait

        Returns:
            Packet, or None on timeout
        """

    @abstractmethod
    def send(self, payload: bytes):
        """Transmit a payload."""

    def close(self):
        pass


class QueueRadio(RadioInterface):
    """
    In-process radio backed by a queue.
    The simulator and the serial reader thread push packets in; the ingestion
    loop pulls them out.
    """

    def __init__(self, maxsize: int = 256):
        self._rx: "queue.Queue[ReceivedPacket]" = queue.Queue(maxsize=maxsize)
        self.sent = []

    def deliver(self, payload: bytes, rssi: int = 0, snr: int = 0):
        """Queue a received payload; oldest packet is dropped when full."""
        if len(payload) > MAX_PAYLOAD_LEN:
            payload = payload[:MAX_PAYLOAD_LEN]
        packet = ReceivedPacket(payload=bytes(payload), rssi=rssi, snr=snr)
        try:
            self._rx.put_nowait(packet)
        except queue.Full:
            try:
                self._rx.get_nowait()
            except queue.Empty:
                pass
            self._rx.put_nowait(packet)

    def receive(self, timeout: float) -> Optional[ReceivedPacket]:
        try:
            return self._rx.get(timeout=timeout)
        except queue.Empty:
            return None

    def send(self, payload: bytes):
        self.sent.append(bytes(payload))

    def pending(self) -> int:
        return self._rx.qsize()
