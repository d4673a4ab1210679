"""
Simulated sensor nodes.
"""

from .node_simulator import SimulatedNodeNetwork, DEFAULT_MAGNET_MOMENT

__all__ = ['SimulatedNodeNetwork', 'DEFAULT_MAGNET_MOMENT']
