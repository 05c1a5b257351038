"""
Container lifecycle state tracking with reconciliation and recovery.

The State Manager is the source of truth for each container's lifecycle
state. It validates every transition against the lifecycle graph, publishes
a container_state_changed event per transition, periodically reconciles the
tracked set against the backend's actual container list (orphan detection),
and retries containers stuck in starting/stopping before declaring them
failed.
"""

import logging
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pool_common.backend import BackendContainerInfo, ContainerBackend
from pool_common.config import PoolConfig
from pool_common.errors import BackendError, StateTransitionError
from pool_common.events import EventBus, EventType
from pool_common.models import Alert, AlertLevel, Container, ContainerState

from .retry import backoff_delay
from .store import ContainerStore
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)

S = ContainerState

# Forward edges. FAILED and ORPHANED are additionally reachable from every
# non-terminal state (see can_transition).
TRANSITIONS: dict[ContainerState, frozenset[ContainerState]] = {
    S.INITIALIZING: frozenset({S.CREATED}),
    S.CREATED: frozenset({S.STARTING}),
    S.STARTING: frozenset({S.RUNNING}),
    S.RUNNING: frozenset({S.AVAILABLE, S.STOPPING}),
    S.AVAILABLE: frozenset({S.BUSY, S.RECYCLING, S.STOPPING}),
    S.BUSY: frozenset({S.AVAILABLE, S.RECYCLING}),
    S.RECYCLING: frozenset({S.STOPPING}),
    S.STOPPING: frozenset({S.STOPPED}),
    S.STOPPED: frozenset(),
    S.FAILED: frozenset({S.STARTING, S.STOPPING}),
    S.ORPHANED: frozenset({S.RUNNING, S.STOPPING}),
}

# Backend statuses that mean a supposedly live container is gone for good
_DEAD_BACKEND_STATUSES = {"exited", "dead"}

# States in which a container must exist in the backend
_LIVE_STATES = {S.CREATED, S.STARTING, S.RUNNING, S.AVAILABLE, S.BUSY}


def can_transition(current: ContainerState, new: ContainerState) -> bool:
    """Whether ``current -> new`` belongs to the lifecycle graph."""
    if current == new:
        return False
    if new in (S.FAILED, S.ORPHANED):
        return current != S.STOPPED
    return new in TRANSITIONS[current]


@dataclass
class TransitionRecord:
    container_id: str
    from_state: ContainerState | None
    to_state: ContainerState
    reason: str
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "from": self.from_state.value if self.from_state else None,
            "to": self.to_state.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


@dataclass
class ReconciliationReport:
    """Drift found by one reconciliation cycle."""

    timestamp: float
    untracked: list[BackendContainerInfo] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    exited: list[str] = field(default_factory=list)
    stuck: list[str] = field(default_factory=list)

    @property
    def has_orphans(self) -> bool:
        return bool(self.untracked or self.missing)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "untracked": [
                {"runtime_id": info.runtime_id, "name": info.name, "status": info.status}
                for info in self.untracked
            ],
            "missing": list(self.missing),
            "exited": list(self.exited),
            "stuck": list(self.stuck),
        }


class StateManager:
    """
    Validated state transitions plus reconciliation against the backend.

    All transition methods are synchronous: with no await between the check
    and the write, a compare-and-transition is atomic on the event loop.
    """

    def __init__(
        self,
        config: PoolConfig,
        store: ContainerStore,
        backend: ContainerBackend,
        bus: EventBus,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config.state
        self.store = store
        self.backend = backend
        self.bus = bus
        self.clock = clock

        self.history: deque[TransitionRecord] = deque(maxlen=self.config.history_size)
        self.transition_counts: Counter[str] = Counter()
        self.invalid_attempts = 0
        self.orphans_detected = 0
        self.recoveries = 0
        self.last_report: ReconciliationReport | None = None

        self._recovery_attempts: dict[str, int] = {}
        self._next_recovery_at: dict[str, float] = {}

        self.task = PeriodicTask(
            "state-reconciler",
            self.reconcile_once,
            self.config.reconcile_interval,
            clock=clock,
            run_immediately=False,
        )

    async def start(self) -> None:
        await self.task.start()
        logger.info("State manager started")

    async def stop(self) -> None:
        await self.task.stop()
        logger.info("State manager stopped")

    # ========================================================================
    # Transitions
    # ========================================================================

    def track(self, container: Container, reason: str = "tracked") -> None:
        """Record the initial state of a container the pool just added to the store."""
        now = self.clock()
        container.state_changed_at = now
        record = TransitionRecord(container.id, None, container.state, reason, now)
        self.history.append(record)
        self._publish_change(record)

    def forget(self, container_id: str) -> None:
        """Drop recovery bookkeeping for a container removed from the store."""
        self._recovery_attempts.pop(container_id, None)
        self._next_recovery_at.pop(container_id, None)

    def transition(
        self, container_id: str, new_state: ContainerState, reason: str = ""
    ) -> TransitionRecord:
        """
        Move a container to ``new_state``.

        Raises:
            UnknownContainerError: If the container is not tracked
            StateTransitionError: If the edge is not in the lifecycle graph
        """
        container = self.store.require(container_id)
        current = container.state

        if not can_transition(current, new_state):
            self.invalid_attempts += 1
            logger.warning(
                f"Rejected transition for {container_id}: "
                f"{current.value} -> {new_state.value} ({reason})"
            )
            raise StateTransitionError(container_id, current.value, new_state.value)

        now = self.clock()
        container.state = new_state
        container.state_changed_at = now
        if new_state not in (S.STARTING, S.STOPPING):
            self._recovery_attempts.pop(container_id, None)
            self._next_recovery_at.pop(container_id, None)

        record = TransitionRecord(container_id, current, new_state, reason, now)
        self.history.append(record)
        self.transition_counts[f"{current.value}->{new_state.value}"] += 1
        logger.debug(
            f"Container {container_id}: {current.value} -> {new_state.value}"
            + (f" ({reason})" if reason else "")
        )
        self._publish_change(record)
        return record

    def compare_and_transition(
        self,
        container_id: str,
        expected: ContainerState,
        new_state: ContainerState,
        reason: str = "",
    ) -> bool:
        """
        Transition only if the container is currently in ``expected``.

        Returns:
            True if the transition happened, False if the state differed

        Raises:
            UnknownContainerError: If the container is not tracked
            StateTransitionError: If ``expected -> new_state`` is not a valid edge
        """
        container = self.store.require(container_id)
        if container.state != expected:
            return False
        self.transition(container_id, new_state, reason)
        return True

    def mark_failed(self, container_id: str, reason: str) -> bool:
        """
        Move a container to failed unless it already is failed or stopped.

        Returns:
            True if the container was moved to failed
        """
        container = self.store.get(container_id)
        if container is None or not can_transition(container.state, S.FAILED):
            return False
        self.transition(container_id, S.FAILED, reason)
        return True

    def _publish_change(self, record: TransitionRecord) -> None:
        self.bus.publish(
            EventType.CONTAINER_STATE_CHANGED,
            record.to_dict(),
            source="state_manager",
        )

    # ========================================================================
    # Reconciliation
    # ========================================================================

    async def reconcile_once(self) -> ReconciliationReport:
        """
        Compare the tracked set with the backend and start recovery of stuck containers.

        Containers with a lifecycle operation in flight, or whose state changed
        after the backend listing was requested, are skipped for this cycle.
        """
        listed_at = self.clock()
        backend_containers = await self.backend.list_pool_containers()
        report = ReconciliationReport(timestamp=listed_at)

        by_runtime = {info.runtime_id: info for info in backend_containers}
        tracked_runtime = self.store.by_runtime_id()

        for info in backend_containers:
            if info.runtime_id in tracked_runtime:
                continue
            if info.pool_id is not None and info.pool_id in self.store:
                # Created but the runtime id is not recorded yet
                continue
            report.untracked.append(info)

        for container in self.store:
            if container.state not in _LIVE_STATES or container.runtime_id is None:
                continue
            if self.store.has_operation(container.id):
                continue
            if container.state_changed_at >= listed_at:
                continue

            info = by_runtime.get(container.runtime_id)
            if info is None:
                logger.warning(
                    f"Container {container.id} ({container.state.value}) "
                    "is missing from the backend"
                )
                self.transition(container.id, S.ORPHANED, "missing from backend")
                report.missing.append(container.id)
            elif info.status in _DEAD_BACKEND_STATUSES and container.state in (
                S.RUNNING,
                S.AVAILABLE,
                S.BUSY,
            ):
                logger.warning(
                    f"Container {container.id} is {container.state.value} "
                    f"but backend reports {info.status}"
                )
                self.transition(container.id, S.FAILED, f"backend reports {info.status}")
                report.exited.append(container.id)

        if report.has_orphans:
            self.orphans_detected += len(report.untracked) + len(report.missing)
            logger.warning(
                f"Reconciliation found {len(report.untracked)} untracked and "
                f"{len(report.missing)} missing containers"
            )
            self.bus.publish(
                EventType.ORPHANS_DETECTED,
                {
                    "untracked": [info.runtime_id for info in report.untracked],
                    "missing": list(report.missing),
                    "report": report,
                },
                source="state_manager",
            )

        report.stuck = await self.check_stuck_containers()
        self.last_report = report
        return report

    async def check_stuck_containers(self) -> list[str]:
        """
        Retry containers stuck in starting/stopping beyond the transition timeout.

        Returns:
            Ids of the containers that were found stuck
        """
        now = self.clock()
        stuck = []
        for container in self.store.in_state(S.STARTING, S.STOPPING):
            if self.store.has_operation(container.id):
                continue
            if now - container.state_changed_at <= self.config.transition_timeout:
                continue
            stuck.append(container.id)
            if now < self._next_recovery_at.get(container.id, 0.0):
                continue
            await self._recover(container)
        return stuck

    async def _recover(self, container: Container) -> None:
        attempt = self._recovery_attempts.get(container.id, 0) + 1
        if attempt > self.config.max_recovery_attempts:
            self._give_up(container)
            return

        self._recovery_attempts[container.id] = attempt
        self._next_recovery_at[container.id] = self.clock() + backoff_delay(
            attempt + 1, self.config.backoff_base
        )
        state = container.state
        logger.warning(
            f"Container {container.id} stuck in {state.value}, "
            f"recovery attempt {attempt}/{self.config.max_recovery_attempts}"
        )

        try:
            if container.runtime_id is None:
                raise BackendError("container has no runtime id")
            if state == S.STARTING:
                await self.backend.start_container(container.runtime_id)
                new_state = S.RUNNING
            else:
                await self.backend.remove_container(container.runtime_id, force=True)
                new_state = S.STOPPED
        except BackendError as e:
            logger.warning(f"Recovery of {container.id} failed: {e}")
            if attempt >= self.config.max_recovery_attempts:
                self._give_up(container)
            return

        # The container may have moved on while the backend call was pending
        if self.compare_and_transition(
            container.id, state, new_state, f"recovered after {attempt} attempt(s)"
        ):
            self.recoveries += 1

    def _give_up(self, container: Container) -> None:
        state = container.state.value
        if not self.mark_failed(container.id, f"stuck in {state}, recovery exhausted"):
            return
        alert = Alert(
            id=uuid.uuid4().hex,
            level=AlertLevel.CRITICAL,
            subject=container.id,
            metric="container_recovery",
            value=float(self.config.max_recovery_attempts),
            threshold=float(self.config.max_recovery_attempts),
            message=(
                f"Container {container.id} stuck in {state}; "
                f"{self.config.max_recovery_attempts} recovery attempts exhausted"
            ),
            timestamp=self.clock(),
            source="state_manager",
        )
        logger.error(alert.message)
        self.bus.publish(
            EventType.RESOURCE_ALERT, {"alert": alert}, source="state_manager"
        )

    # ========================================================================
    # Queries
    # ========================================================================

    def containers_in_state(self, state: ContainerState) -> list[Container]:
        return self.store.in_state(state)

    def get_history(
        self, container_id: str | None = None, limit: int = 50
    ) -> list[TransitionRecord]:
        if limit <= 0:
            return []
        records = [
            r for r in self.history if container_id is None or r.container_id == container_id
        ]
        return records[-limit:]

    def get_stats(self) -> dict[str, Any]:
        return {
            "distribution": self.store.count_by_state(),
            "transitions": dict(self.transition_counts),
            "invalid_attempts": self.invalid_attempts,
            "orphans_detected": self.orphans_detected,
            "recoveries": self.recoveries,
            "recovering": dict(self._recovery_attempts),
            "last_reconciliation": self.last_report.to_dict() if self.last_report else None,
        }
