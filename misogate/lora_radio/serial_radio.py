"""
Serial LoRa bridge - reads packets from a UART LoRa modem.

The modem prints one line per received packet:

    +RCV=<len>,<hex payload>,<rssi>,<snr>

Transmit uses AT+SEND=0,<len>,<hex payload>.
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Optional

import serial

from misogate.datatypes.datatypes import ReceivedPacket
from .radio import QueueRadio, RadioInterface

# Setup JSON logging
logging.basicConfig(
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

_RCV_RE = re.compile(r"^\+RCV=(\d+),([0-9A-Fa-f]*),(-?\d+),(-?\d+)\s*$")


@dataclass(frozen=True)
class SerialRadioConfig:
    """UART bridge configuration."""
    serial_port: str = "/dev/ttyUSB0"
    baud_rate: int = 115200
    read_timeout_s: float = 1.0


def parse_rcv_line(line: str) -> Optional[ReceivedPacket]:
    """
    Parse one modem line.

    Returns:
        Packet, or None if the line is not a well-formed receive report
    """
    m = _RCV_RE.match(line.strip())
    if not m:
        return None

    length = int(m.group(1))
    hex_payload = m.group(2)
    if len(hex_payload) != 2 * length:
        return None
    try:
        payload = bytes.fromhex(hex_payload)
    except ValueError:
        return None

    return ReceivedPacket(payload=payload, rssi=int(m.group(3)), snr=int(m.group(4)))


class SerialLoRaRadio(RadioInterface):
    """
    LoRa modem on a serial port.
    A reader thread parses modem lines and queues packets for `receive`.
    """

    def __init__(self, config: SerialRadioConfig):
        self.config = config
        self.serial_conn = None
        self.running = False
        self.read_thread: Optional[threading.Thread] = None
        self._queue = QueueRadio()
        self._write_lock = threading.Lock()

    def start(self) -> bool:
        """Open the port and start the reader thread."""
        try:
            self.serial_conn = serial.Serial(
                self.config.serial_port,
                self.config.baud_rate,
                timeout=self.config.read_timeout_s
            )
            self.running = True

            self.read_thread = threading.Thread(target=self._read_serial_loop, daemon=True)
            self.read_thread.start()

            logger.info(json.dumps({
                "event": "radio_started",
                "serial_port": self.config.serial_port,
                "baud_rate": self.config.baud_rate
            }))
            return True

        except Exception as e:
            logger.error(json.dumps({
                "event": "radio_start_failed",
                "error": str(e),
                "serial_port": self.config.serial_port
            }))
            return False

    def close(self):
        """Stop the reader and close the port."""
        self.running = False
        if self.serial_conn:
            self.serial_conn.close()

        logger.info(json.dumps({
            "event": "radio_stopped"
        }))

    def receive(self, timeout: float) -> Optional[ReceivedPacket]:
        return self._queue.receive(timeout)

    def send(self, payload: bytes):
        if not self.serial_conn:
            raise RuntimeError("Serial port not open")
        command = f"AT+SEND=0,{len(payload)},{payload.hex().upper()}\r\n"
        with self._write_lock:
            self.serial_conn.write(command.encode("ascii"))

    def _read_serial_loop(self):
        """Main serial reading loop."""
        while self.running:
            try:
                if not self.serial_conn or not self.serial_conn.is_open:
                    time.sleep(0.1)
                    continue

                line = self.serial_conn.readline().decode(errors="ignore").strip()
                if line:
                    self._process_serial_line(line)

            except Exception as e:
                logger.error(json.dumps({
                    "event": "serial_read_error",
                    "error": str(e)
                }))
                time.sleep(0.1)

    def _process_serial_line(self, line: str):
        packet = parse_rcv_line(line)
        if packet is None:
            # modem chatter (+OK, +READY, errors)
            logger.debug(json.dumps({
                "event": "serial_line_ignored",
                "line": line[:80]
            }))
            return
        self._queue.deliver(packet.payload, rssi=packet.rssi, snr=packet.snr)
