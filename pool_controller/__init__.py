"""
Pool Controller module.

This module contains the container pool engine: the Docker backend, the
State Manager, Pool Manager, Dynamic Scaler, Reuse Optimizer and Resource
Monitor, and the orchestrator that wires them together.

The controller runs as its own process (``python -m pool_controller``) and
persists patterns, scaling history and alerts through pool_persistence.
"""

from .docker_backend import DockerBackend
from .orchestrator import PoolOrchestrator
from .pool_manager import PoolManager
from .resource_monitor import ResourceMonitor, SystemProbe
from .reuse_optimizer import ReuseOptimizer
from .scaler import DynamicScaler
from .state_manager import StateManager

__all__ = [
    "PoolOrchestrator",
    "PoolManager",
    "StateManager",
    "DynamicScaler",
    "ReuseOptimizer",
    "ResourceMonitor",
    "SystemProbe",
    "DockerBackend",
]
