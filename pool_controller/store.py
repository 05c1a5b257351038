"""
Owned store of container records keyed by pool id.

Only the Pool Manager adds, removes or mutates records. The State Manager
writes the state fields through validated transitions; every other component
reads.
"""

from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager

from pool_common.errors import UnknownContainerError
from pool_common.models import Container, ContainerState


class ContainerStore:
    def __init__(self) -> None:
        self._containers: dict[str, Container] = {}
        self._operations: Counter[str] = Counter()

    def add(self, container: Container) -> None:
        if container.id in self._containers:
            raise ValueError(f"Container {container.id} is already tracked")
        self._containers[container.id] = container

    def remove(self, container_id: str) -> Container | None:
        return self._containers.pop(container_id, None)

    def get(self, container_id: str) -> Container | None:
        return self._containers.get(container_id)

    def require(self, container_id: str) -> Container:
        container = self._containers.get(container_id)
        if container is None:
            raise UnknownContainerError(container_id)
        return container

    def in_state(self, *states: ContainerState) -> list[Container]:
        return [c for c in self._containers.values() if c.state in states]

    def by_runtime_id(self) -> dict[str, Container]:
        return {c.runtime_id: c for c in self._containers.values() if c.runtime_id}

    def count_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in ContainerState}
        for container in self._containers.values():
            counts[container.state.value] += 1
        return counts

    @contextmanager
    def operation(self, container_id: str) -> Iterator[None]:
        """Mark a lifecycle operation (create, health check, removal) as in flight."""
        self._operations[container_id] += 1
        try:
            yield
        finally:
            self._operations[container_id] -= 1
            if self._operations[container_id] <= 0:
                del self._operations[container_id]

    def has_operation(self, container_id: str) -> bool:
        return self._operations.get(container_id, 0) > 0

    def __contains__(self, container_id: object) -> bool:
        return container_id in self._containers

    def __len__(self) -> int:
        return len(self._containers)

    def __iter__(self) -> Iterator[Container]:
        # Snapshot so callers may mutate the store while iterating
        return iter(list(self._containers.values()))
