"""
Gateway core: configuration and the shared context used by all loops.
"""

from .config import GatewayConfig
from .context import GatewayContext, GatewaySnapshot

__all__ = ['GatewayConfig', 'GatewayContext', 'GatewaySnapshot']
