"""
Configuration for the position telemetry publisher.
"""

from dataclasses import dataclass
from typing import Optional

@dataclass(frozen=True)
class MQTTConfig:
    """MQTT broker configuration."""
    broker: str
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = "misogate"
    qos: int = 0  # Fire-and-forget, the next tick supersedes a lost position
    keepalive: int = 60

    # Topic patterns
    position_topic: str = "misogate/pub"

    # Reconnection settings
    reconnect_delay_min: float = 1.0
    reconnect_delay_max: float = 5.0
    connect_timeout: float = 10.0
