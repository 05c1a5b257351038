"""
Abstract container backend interface.

This module defines the contract a container runtime must satisfy for the
pool to drive it, allowing the Docker CLI backend to be swapped for another
runtime (or an in-memory fake in tests).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from .config import QuotaConfig, TemplateConfig
from .models import ResourceSample

BackendStatus = Literal[
    "created", "running", "exited", "paused", "restarting", "removing", "dead"
]


@dataclass
class BackendContainerInfo:
    """
    Information about a container from the backend's perspective.

    ``pool_id`` is the pool container id recovered from the backend name, or
    None when the name does not follow the pool naming scheme.
    """

    runtime_id: str
    name: str
    status: BackendStatus
    pool_id: str | None = None
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)


class ContainerBackend(ABC):
    """
    Abstract base class for container runtime operations.

    Every operation must be bounded by a timeout; implementations raise
    BackendTimeoutError instead of waiting indefinitely.
    """

    @abstractmethod
    async def ping(self) -> None:
        """
        Check that the backend is reachable.

        Raises:
            BackendError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def create_container(
        self, name: str, template: TemplateConfig, quota: QuotaConfig
    ) -> str:
        """
        Create (but do not start) a container from a template.

        Args:
            name: Backend container name
            template: Image, working directory, labels and environment
            quota: CPU/memory/disk/process limits applied at creation

        Returns:
            Backend runtime id of the new container

        Raises:
            QuotaExceededError: If the backend rejects the resource limits
            ContainerCreationError: If creation fails for any other reason
            BackendTimeoutError: If the backend does not answer in time
        """
        pass

    @abstractmethod
    async def start_container(self, runtime_id: str) -> None:
        """
        Start a created container.

        Raises:
            BackendError: If the start fails
        """
        pass

    @abstractmethod
    async def stop_container(self, runtime_id: str, timeout: int = 10) -> None:
        """
        Stop a running container.

        Args:
            runtime_id: Backend runtime id
            timeout: Seconds to wait before the backend kills the container
        """
        pass

    @abstractmethod
    async def remove_container(self, runtime_id: str, force: bool = False) -> None:
        """
        Remove a container. Removing a container that no longer exists is not an error.

        Args:
            runtime_id: Backend runtime id
            force: If True, remove even if running
        """
        pass

    @abstractmethod
    async def inspect_container(self, runtime_id: str) -> BackendContainerInfo | None:
        """
        Get information about a container.

        Returns:
            BackendContainerInfo if the container exists, None otherwise
        """
        pass

    @abstractmethod
    async def container_stats(self, runtime_id: str) -> ResourceSample | None:
        """
        Take a one-shot resource sample of a running container.

        Returns:
            ResourceSample with ``subject`` set to the runtime id, or None if
            the container is gone
        """
        pass

    @abstractmethod
    async def container_logs(self, runtime_id: str, tail: int = 100) -> str:
        """Return the last ``tail`` lines of a container's output."""
        pass

    @abstractmethod
    async def exec_in_container(self, runtime_id: str, command: str) -> int:
        """
        Run a shell command inside a running container.

        Returns:
            The command's exit code
        """
        pass

    @abstractmethod
    async def list_pool_containers(self) -> list[BackendContainerInfo]:
        """List every container carrying the pool label, running or not."""
        pass

    async def close(self) -> None:
        """Release backend connections. Default: nothing to release."""
        return None
