"""
Gateway bring-up script that coordinates the radio, calibration console,
position estimation and MQTT publishing.
"""

import json
import logging
import threading
import time
from typing import Optional

from misogate.calibration.console import CalibrationConsole
from misogate.gateway.config import GatewayConfig
from misogate.gateway.context import GatewayContext
from misogate.gateway_mqtt.config import MQTTConfig
from misogate.gateway_mqtt.publisher import PositionPublisher
from misogate.localization_algos.fusion.blend import ESTIMATION_METHODS
from misogate.lora_radio.radio import QueueRadio, RadioInterface
from misogate.lora_radio.serial_radio import SerialLoRaRadio, SerialRadioConfig
from misogate.simulation.node_simulator import SimulatedNodeNetwork

# Setup JSON logging
logging.basicConfig(
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

class GatewayBringUp:
    """
    Gateway process that coordinates:
    1. Radio ingestion (decode, calibration, estimation)
    2. Operator console
    3. Periodic MQTT position publishing
    """

    def __init__(
        self,
        config: GatewayConfig,
        mqtt_config: MQTTConfig,
        radio: RadioInterface,
        simulator: Optional[SimulatedNodeNetwork] = None
    ):
        """Initialize the gateway with configuration."""
        self.config = config
        self.context = GatewayContext(config)
        self.radio = radio
        self.simulator = simulator

        self.publisher = PositionPublisher(
            config=mqtt_config,
            snapshot_provider=self.context.snapshot,
            interval_s=config.publish_interval_s
        )
        self.console = CalibrationConsole(
            self.context.calibration,
            position_status=self.context.describe_position
        )

        # Ingestion thread control
        self._stop_event = threading.Event()
        self._ingest_thread = threading.Thread(
            target=self._ingest_packets,
            daemon=True
        )

        logger.info(json.dumps({
            "event": "gateway_initialized",
            "n_sensors": len(config.sensor_positions),
            "method": config.estimation_method,
            "simulated": simulator is not None
        }))

    def start(self, wait_for_broker: bool = True):
        """Connect MQTT, then start calibration and all loops."""
        self.publisher.connect()

        if wait_for_broker:
            while not self._stop_event.is_set() and not self.publisher.wait_connected():
                logger.warning(json.dumps({
                    "event": "mqtt_wait_timeout",
                    "broker": self.publisher.config.broker
                }))

        self.context.calibration.begin()
        self._ingest_thread.start()
        self.publisher.start()
        self.console.start()

        if self.simulator:
            self.simulator.start(follow_path=True)

        logger.info(json.dumps({
            "event": "gateway_started"
        }))

    def stop(self):
        """Stop all processing."""
        self._stop_event.set()
        self.console.stop()
        if self.simulator:
            self.simulator.stop()
        self.publisher.disconnect()
        self.radio.close()

        logger.info(json.dumps({
            "event": "gateway_stopped",
            "frames_accepted": self.context.decoder.accepted,
            "frames_rejected": self.context.decoder.rejected
        }))

    def _ingest_packets(self):
        """
        Main ingestion loop that runs in a separate thread.
        A receive timeout only means no node transmitted in the window.
        """
        while not self._stop_event.is_set():
            try:
                packet = self.radio.receive(timeout=self.config.receive_timeout_s)
                if packet is None:
                    logger.debug(json.dumps({
                        "event": "rx_timeout",
                        "timeout_s": self.config.receive_timeout_s
                    }))
                    continue

                self.context.handle_packet(packet)

            except Exception as e:
                logger.error(json.dumps({
                    "event": "processing_error",
                    "error": str(e)
                }))
                time.sleep(0.01)

    def update_simulation(self):
        """Put the simulated magnet into the area once tracking starts."""
        if self.simulator and self.context.calibration.is_running() and self.simulator.magnet_xy is None:
            self.simulator.set_magnet(SimulatedNodeNetwork.figure_eight(0.0))
            logger.info(json.dumps({
                "event": "simulated_magnet_placed"
            }))

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Magnet tracking gateway')
    parser.add_argument('--broker', type=str, default='localhost',
                      help='MQTT broker IP address')
    parser.add_argument('--port', type=int, default=1883,
                      help='MQTT broker port')
    parser.add_argument('--serial-port', type=str, default='/dev/ttyUSB0',
                      help='Serial port of the LoRa modem')
    parser.add_argument('--baud', type=int, default=115200,
                      help='Serial baud rate')
    parser.add_argument('--simulate', action='store_true',
                      help='Use simulated sensor nodes instead of the radio')
    parser.add_argument('--method', type=str, default=None,
                      choices=list(ESTIMATION_METHODS),
                      help='Position estimation method')
    parser.add_argument('--no-wait', action='store_true',
                      help='Start calibration without waiting for the broker')
    args = parser.parse_args()

    overrides = {}
    if args.method:
        overrides["estimation_method"] = args.method
    config = GatewayConfig.from_env(**overrides)

    mqtt_config = MQTTConfig(
        broker=args.broker,
        port=args.port
    )

    logger.info(json.dumps({
        "event": "gateway_config",
        "broker": args.broker,
        "port": args.port,
        "serial_port": None if args.simulate else args.serial_port,
        "method": config.estimation_method
    }))

    simulator = None
    if args.simulate:
        radio = QueueRadio()
        simulator = SimulatedNodeNetwork(
            config.layout(),
            radio,
            master_key=config.master_key,
            noise_std=20.0
        )
    else:
        radio = SerialLoRaRadio(SerialRadioConfig(serial_port=args.serial_port, baud_rate=args.baud))
        if not radio.start():
            raise SystemExit(1)

    gateway = GatewayBringUp(config, mqtt_config, radio, simulator=simulator)

    try:
        gateway.start(wait_for_broker=not args.no_wait)

        # Keep main thread alive
        while True:
            gateway.update_simulation()
            time.sleep(1)

    except KeyboardInterrupt:
        gateway.stop()
