"""
Pool Common module.

This module contains the shared domain models, configuration, error
taxonomy, event bus and collaborator interfaces used across the pool
components (controller, persistence, admin CLI).

The common module has no dependencies on other pool_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .backend import BackendContainerInfo, ContainerBackend
from .config import PoolConfig
from .events import Event, EventBus, EventType
from .models import (
    Alert,
    AlertLevel,
    Container,
    ContainerState,
    JobDescriptor,
    JobOutcome,
    JobPattern,
    ResourceHints,
    ResourceSample,
    ScalingDirection,
    ScalingEvent,
)
from .repository import PoolRepository

__all__ = [
    "Alert",
    "AlertLevel",
    "BackendContainerInfo",
    "Container",
    "ContainerBackend",
    "ContainerState",
    "Event",
    "EventBus",
    "EventType",
    "JobDescriptor",
    "JobOutcome",
    "JobPattern",
    "PoolConfig",
    "PoolRepository",
    "ResourceHints",
    "ResourceSample",
    "ScalingDirection",
    "ScalingEvent",
]
