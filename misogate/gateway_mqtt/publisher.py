"""
Position publisher - periodically publishes the latest position as JSON over MQTT.
Publishes only while tracking is running and the broker connection is up.
"""

import json
import logging
import threading
import time
import uuid
from typing import Callable, Dict, Optional

import paho.mqtt.client as mqtt

from misogate.gateway.context import GatewaySnapshot
from .config import MQTTConfig

# Setup JSON logging
logging.basicConfig(
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

class PositionPublisher:
    """
    MQTT client for publishing tracker positions.
    Connection loss never stops the publish loop; ticks are skipped until the
    broker is reachable again.
    """

    def __init__(
        self,
        config: MQTTConfig,
        snapshot_provider: Callable[[], GatewaySnapshot],
        interval_s: float = 1.0
    ):
        """
        Initialize the publisher.

        Args:
            config: MQTT configuration
            snapshot_provider: Returns a consistent gateway snapshot
            interval_s: Seconds between publish attempts
        """
        self.config = config
        self.snapshot_provider = snapshot_provider
        self.interval_s = interval_s

        # MQTT client with unique ID to prevent duplicate connections
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{config.client_id}_{uuid.uuid4()}",
            protocol=mqtt.MQTTv311
        )

        # Set callbacks
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect

        # Enable automatic reconnect
        self._client.reconnect_delay_set(
            min_delay=int(config.reconnect_delay_min),
            max_delay=int(config.reconnect_delay_max)
        )

        # Set auth if provided
        if config.username and config.password:
            self._client.username_pw_set(config.username, config.password)

        # Connection status
        self._connected = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.published = 0
        self.failed = 0

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def connect(self):
        """Start connecting to the broker (non-blocking)."""
        try:
            self._client.connect_async(
                self.config.broker,
                self.config.port,
                self.config.keepalive
            )
            self._client.loop_start()

            logger.info(json.dumps({
                "event": "publisher_connecting",
                "broker": self.config.broker,
                "port": self.config.port
            }))

        except Exception as e:
            logger.error(json.dumps({
                "event": "connect_failed",
                "error": str(e)
            }))
            raise

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Block until the broker acknowledged the connection."""
        return self._connected.wait(self.config.connect_timeout if timeout is None else timeout)

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def disconnect(self):
        """Stop the publish loop and disconnect."""
        self.stop()
        self._client.loop_stop()
        self._client.disconnect()

        logger.info(json.dumps({
            "event": "publisher_disconnected"
        }))

    def _on_connect(self, client: mqtt.Client, userdata: Dict, flags, reason_code, properties=None):
        """Handle connection result."""
        if not reason_code.is_failure:
            self._connected.set()
            logger.info(json.dumps({
                "event": "mqtt_connected",
                "broker": self.config.broker,
                "topic": self.config.position_topic,
                "qos": self.config.qos
            }))
        else:
            self._connected.clear()
            logger.error(json.dumps({
                "event": "mqtt_connect_failed",
                "reason": str(reason_code)
            }))

    def _on_disconnect(self, client: mqtt.Client, userdata: Dict, flags, reason_code, properties=None):
        """Handle disconnection (paho reconnects on its own)."""
        self._connected.clear()
        logger.warning(json.dumps({
            "event": "mqtt_disconnected",
            "reason": str(reason_code)
        }))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def start(self):
        """Start the periodic publish thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._publish_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()

    def _publish_loop(self):
        while not self._stop_event.is_set():
            try:
                self.publish_tick()
            except Exception as e:
                logger.error(json.dumps({
                    "event": "publish_loop_error",
                    "error": str(e)
                }))
            self._stop_event.wait(self.interval_s)

    def publish_tick(self) -> bool:
        """
        One publish attempt.

        Returns:
            True if a position was handed to the broker client
        """
        snapshot = self.snapshot_provider()
        if not snapshot.running:
            return False

        if snapshot.position is None:
            logger.debug(json.dumps({
                "event": "position_unavailable",
                "phase": snapshot.phase
            }))
            return False

        if not self.is_connected():
            logger.debug(json.dumps({
                "event": "publish_skipped",
                "reason": "not_connected"
            }))
            return False

        x, y = snapshot.position.as_xy()
        payload = json.dumps({"x": x, "y": y})

        try:
            info = self._client.publish(
                self.config.position_topic,
                payload,
                qos=self.config.qos
            )
        except Exception as e:
            self.failed += 1
            logger.error(json.dumps({
                "event": "publish_failed",
                "error": str(e)
            }))
            return False

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.failed += 1
            logger.error(json.dumps({
                "event": "publish_failed",
                "rc": info.rc,
                "reason": mqtt.error_string(info.rc)
            }))
            return False

        self.published += 1
        logger.debug(json.dumps({
            "event": "position_published",
            "topic": self.config.position_topic,
            "x": x,
            "y": y,
            "ts": time.time()
        }))
        return True
