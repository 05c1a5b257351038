"""
Shared fixtures for the pool unit tests.

Provides an in-memory container backend that behaves like the Docker
backend (names, pool ids, statuses) with switches for injecting failures,
and a manually advanced clock for cooldown and grace-period tests.
"""

import asyncio
import dataclasses

import pytest

from pool_common.backend import BackendContainerInfo, ContainerBackend
from pool_common.config import PoolConfig, PoolSizeConfig
from pool_common.errors import BackendError, ContainerCreationError, QuotaExceededError
from pool_common.events import EventBus
from pool_common.models import ResourceSample
from pool_controller.pool_manager import PoolManager
from pool_controller.reuse_optimizer import ReuseOptimizer
from pool_controller.state_manager import StateManager
from pool_controller.store import ContainerStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeBackend(ContainerBackend):
    """In-memory backend. Runtime ids are rt0000000001, rt0000000002, ..."""

    def __init__(self, prefix: str = "ci-pool-"):
        self.prefix = prefix
        self.containers: dict[str, BackendContainerInfo] = {}
        self.names: dict[str, str] = {}
        self.reachable = True
        self.fail_create = 0
        self.quota_error = False
        self.fail_start = 0
        self.fail_exec: set[str] = set()
        self.fail_remove: set[str] = set()
        self.stats: dict[str, ResourceSample] = {}
        self.create_gate: asyncio.Event | None = None
        self.create_calls = 0
        self.removed: list[str] = []
        self.exec_calls: list[tuple[str, str]] = []
        self.closed = False
        self._counter = 0

    def _resolve(self, ref: str) -> str:
        return self.names.get(ref, ref)

    def add_untracked(self, name: str, status: str = "running") -> str:
        """Create a backend container the pool does not know about."""
        self._counter += 1
        runtime_id = f"rt{self._counter:010d}"
        pool_id = name[len(self.prefix):] if name.startswith(self.prefix) else None
        self.containers[runtime_id] = BackendContainerInfo(
            runtime_id=runtime_id, name=name, status=status, pool_id=pool_id
        )
        self.names[name] = runtime_id
        return runtime_id

    async def ping(self) -> None:
        if not self.reachable:
            raise BackendError("docker daemon unreachable")

    async def create_container(self, name, template, quota) -> str:
        self.create_calls += 1
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.quota_error:
            raise QuotaExceededError("Memory limit must be positive: '0'")
        if self.fail_create > 0:
            self.fail_create -= 1
            raise ContainerCreationError("simulated create failure")
        if name in self.names:
            raise ContainerCreationError(f"Conflict. The container name {name} is already in use")
        runtime_id = self.add_untracked(name, status="created")
        return runtime_id

    async def start_container(self, runtime_id: str) -> None:
        if self.fail_start > 0:
            self.fail_start -= 1
            raise BackendError("simulated start failure")
        info = self.containers.get(self._resolve(runtime_id))
        if info is None:
            raise BackendError(f"No such container: {runtime_id}")
        info.status = "running"

    async def stop_container(self, runtime_id: str, timeout: int = 10) -> None:
        info = self.containers.get(self._resolve(runtime_id))
        if info is not None:
            info.status = "exited"

    async def remove_container(self, runtime_id: str, force: bool = False) -> None:
        runtime_id = self._resolve(runtime_id)
        if runtime_id in self.fail_remove:
            raise BackendError(f"simulated remove failure for {runtime_id}")
        info = self.containers.pop(runtime_id, None)
        if info is not None:
            self.names.pop(info.name, None)
            self.removed.append(runtime_id)

    async def inspect_container(self, runtime_id: str):
        return self.containers.get(self._resolve(runtime_id))

    async def container_stats(self, runtime_id: str):
        sample = self.stats.get(runtime_id)
        return dataclasses.replace(sample) if sample else None

    async def container_logs(self, runtime_id: str, tail: int = 100) -> str:
        return ""

    async def exec_in_container(self, runtime_id: str, command: str) -> int:
        self.exec_calls.append((runtime_id, command))
        if runtime_id not in self.containers:
            raise BackendError(f"No such container: {runtime_id}")
        return 1 if runtime_id in self.fail_exec else 0

    async def list_pool_containers(self):
        return [dataclasses.replace(info) for info in self.containers.values()]

    async def close(self) -> None:
        self.closed = True


class FakeProbe:
    """Host probe returning fixed, adjustable values."""

    def __init__(self, clock, cpu: float = 20.0, memory: float = 30.0):
        self.clock = clock
        self.cpu = cpu
        self.memory = memory
        self.calls = 0

    def sample(self) -> ResourceSample:
        self.calls += 1
        return ResourceSample(
            "system", self.clock(), cpu_percent=self.cpu, memory_percent=self.memory
        )


async def no_sleep(_seconds: float) -> None:
    return None


def make_config(min_size: int = 2, target_size: int = 3, max_size: int = 5) -> PoolConfig:
    config = PoolConfig(
        size=PoolSizeConfig(min_size=min_size, target_size=target_size, max_size=max_size)
    )
    config.state.backoff_base = 0.0
    return config.validate()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def store():
    return ContainerStore()


@pytest.fixture
def state_manager(config, store, backend, bus, clock):
    return StateManager(config, store, backend, bus, clock=clock)


@pytest.fixture
def optimizer(config, store, bus, clock):
    return ReuseOptimizer(config, store, bus, clock=clock)


@pytest.fixture
def pool(config, backend, store, state_manager, optimizer, bus, clock):
    return PoolManager(
        config,
        backend,
        store,
        state_manager,
        optimizer,
        bus,
        clock=clock,
        sleep=no_sleep,
    )
