"""
Position telemetry over MQTT.
"""

from .publisher import PositionPublisher
from .config import MQTTConfig

__all__ = ['PositionPublisher', 'MQTTConfig']
