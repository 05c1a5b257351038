"""
Pool manager: owns the container collection.

The Pool Manager creates containers from the configured template with quotas
applied, hands available containers to jobs, takes them back after a health
check, and removes them on recycling, failure or scale-down. It is the only
component that adds, removes or mutates container records; lifecycle states
change exclusively through the State Manager.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from pool_common.backend import BackendContainerInfo, ContainerBackend
from pool_common.config import PoolConfig, parse_cpu_limit, parse_memory_limit
from pool_common.errors import (
    AssignmentCancelledError,
    BackendError,
    BackendTimeoutError,
    ContainerCreationError,
    HealthCheckFailure,
    PoolExhaustedError,
    QuotaExceededError,
    StateTransitionError,
)
from pool_common.events import EventBus, EventType
from pool_common.models import (
    Alert,
    AlertLevel,
    Container,
    ContainerState,
    JobDescriptor,
    JobOutcome,
)

from .retry import retry_async
from .reuse_optimizer import ReuseOptimizer
from .state_manager import ReconciliationReport, StateManager, can_transition
from .store import ContainerStore

logger = logging.getLogger(__name__)

S = ContainerState

UsageProvider = Callable[[str], dict[str, float]]


class PoolManager:
    """
    Bounded pool of long-lived execution containers.

    ``assign`` never blocks waiting for a container: when nothing is available
    it creates one on demand if the pool is below max, otherwise it raises
    PoolExhaustedError and the caller queues and retries.
    """

    def __init__(
        self,
        config: PoolConfig,
        backend: ContainerBackend,
        store: ContainerStore,
        state_manager: StateManager,
        optimizer: ReuseOptimizer,
        bus: EventBus,
        usage_provider: UsageProvider | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        """
        Initialize the pool manager.

        Args:
            config: Pool configuration (sizes, template, quotas, retry policy)
            backend: Container backend
            store: Container store owned by this manager
            state_manager: Validates and records every state transition
            optimizer: Scores containers for assignment and advises recycling
            bus: Event bus for status and lifecycle events
            usage_provider: Latest cpu/memory percent for a container id
            clock: Time source
            sleep: Sleep used between retries
        """
        self.config = config
        self.backend = backend
        self.store = store
        self.state = state_manager
        self.optimizer = optimizer
        self.bus = bus
        self.usage_provider = usage_provider or (lambda _container_id: {})
        self.clock = clock
        self._sleep = sleep

        self.min_size = config.size.min_size
        self.target_size = config.size.target_size
        self.max_size = config.size.max_size

        self._claims: dict[str, str] = {}  # container_id -> job_id
        self._bindings: dict[str, JobDescriptor] = {}
        self._removing: set[str] = set()
        self._returning: set[str] = set()
        self._accepting = True
        self._inflight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self.initialized = False

        self.total_created = 0
        self.total_destroyed = 0
        self.creation_failures = 0
        self.jobs_assigned = 0
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.total_job_seconds = 0.0
        self.rejected_assignments = 0
        self.health_check_failures = 0
        self.recycled = 0
        self.orphans_adopted = 0
        self.orphans_removed = 0

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def size(self) -> int:
        return len(self.store)

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def utilization(self) -> float:
        """busy / online, where online = available + busy."""
        free = len(self.store.in_state(S.AVAILABLE))
        busy = len(self.store.in_state(S.BUSY))
        online = free + busy
        return busy / online if online else 0.0

    # ========================================================================
    # Initialization
    # ========================================================================

    async def initialize(self) -> list[Container]:
        """
        Bring the pool to target size.

        Raises:
            BackendError: If the backend is unreachable
            ContainerCreationError: If fewer than min containers could be created
        """
        await self.backend.ping()
        # Limits are validated once here so a bad quota fails startup, not a job
        parse_memory_limit(self.config.quota.memory)
        parse_cpu_limit(self.config.quota.cpus)

        missing = self.target_size - len(self.store)
        logger.info(
            f"Initializing pool: creating {missing} container(s) "
            f"(min={self.min_size}, target={self.target_size}, max={self.max_size})"
        )
        created = await self.scale_up(missing, "initial pool")

        if len(self.store.in_state(S.AVAILABLE)) < self.min_size:
            raise ContainerCreationError(
                f"Only {len(created)} of {missing} containers could be created "
                f"(min_size={self.min_size})"
            )

        self.initialized = True
        logger.info(f"Pool initialized with {len(created)} available container(s)")
        self._publish_status()
        return created

    # ========================================================================
    # Container creation
    # ========================================================================

    def _new_record(self, reason: str, claim_for: str | None = None) -> Container:
        """Add an initializing record to the store. Synchronous, so it reserves a slot."""
        now = self.clock()
        container = Container(
            id=uuid.uuid4().hex[:12],
            template=self.config.template.name,
            created_at=now,
        )
        self.store.add(container)
        if claim_for is not None:
            self._claims[container.id] = claim_for
        self.state.track(container, reason)
        return container

    def _container_name(self, container_id: str) -> str:
        return f"{self.config.backend.container_prefix}{container_id}"

    async def _create_backend_container(self, name: str) -> str:
        try:
            return await self.backend.create_container(
                name, self.config.template, self.config.quota
            )
        except BackendTimeoutError:
            # The create may have gone through; clear the name before retrying
            await self.backend.remove_container(name, force=True)
            raise

    async def _bring_up(self, container: Container) -> Container | None:
        """
        Drive a new record through created -> starting -> running -> available.

        Returns:
            The container, or None if creation failed (container marked failed,
            alert published, record removed)

        Raises:
            QuotaExceededError: If the backend rejected the resource limits
        """
        cid = container.id
        attempts = self.config.state.max_recovery_attempts
        base_delay = self.config.state.backoff_base
        name = self._container_name(cid)

        with self.store.operation(cid):
            try:
                runtime_id = await retry_async(
                    lambda: self._create_backend_container(name),
                    attempts,
                    base_delay,
                    retry_on=(ContainerCreationError, BackendError),
                    description=f"create {name}",
                    sleep=self._sleep,
                )
                container.runtime_id = runtime_id
                self.state.transition(cid, S.CREATED, "backend container created")
                self.state.transition(cid, S.STARTING)
                await retry_async(
                    lambda: self.backend.start_container(runtime_id),
                    attempts,
                    base_delay,
                    retry_on=(BackendError,),
                    description=f"start {name}",
                    sleep=self._sleep,
                )
                self.state.transition(cid, S.RUNNING)
            except QuotaExceededError as e:
                self.creation_failures += 1
                await self._fail_container(container, f"quota rejected: {e}")
                raise
            except (ContainerCreationError, BackendError) as e:
                self.creation_failures += 1
                await self._fail_container(container, f"creation failed: {e}")
                return None

            self.state.transition(cid, S.AVAILABLE, "ready")
            container.last_idle_at = self.clock()

        self.total_created += 1
        self.bus.publish(
            EventType.CONTAINER_CREATED,
            {"container_id": cid, "runtime_id": container.runtime_id},
            source="pool_manager",
        )
        return container

    async def _fail_container(self, container: Container, reason: str) -> None:
        """Mark failed, raise a critical alert and remove the container."""
        self.state.mark_failed(container.id, reason)
        alert = Alert(
            id=uuid.uuid4().hex,
            level=AlertLevel.CRITICAL,
            subject=container.id,
            metric="container_failure",
            value=None,
            threshold=None,
            message=f"Container {container.id} failed: {reason}",
            timestamp=self.clock(),
            source="pool_manager",
        )
        logger.error(alert.message)
        self.bus.publish(EventType.RESOURCE_ALERT, {"alert": alert}, source="pool_manager")
        await self._remove_container(container, reason)

    # ========================================================================
    # Removal
    # ========================================================================

    async def _remove_container(self, container: Container, reason: str) -> bool:
        """
        Stop and remove a container, then drop its record.

        A container whose backend removal fails is left in stopping; the State
        Manager's stuck-container recovery retries it.

        Returns:
            True if the record was removed
        """
        cid = container.id
        if cid in self._removing:
            return False
        if container.state == S.BUSY:
            raise StateTransitionError(cid, S.BUSY.value, S.STOPPING.value)

        self._removing.add(cid)
        try:
            with self.store.operation(cid):
                if container.state != S.STOPPED:
                    if container.state != S.STOPPING:
                        if not can_transition(container.state, S.STOPPING):
                            self.state.mark_failed(cid, reason)
                        self.state.transition(cid, S.STOPPING, reason)

                    if container.runtime_id is not None:
                        try:
                            await self.backend.remove_container(
                                container.runtime_id, force=True
                            )
                        except BackendError as e:
                            logger.warning(
                                f"Failed to remove container {cid}, "
                                f"leaving it for recovery: {e}"
                            )
                            return False

                    self.state.transition(cid, S.STOPPED, reason)
                self._forget(container, reason)
                return True
        finally:
            self._removing.discard(cid)

    def _forget(self, container: Container, reason: str) -> None:
        if self.store.remove(container.id) is None:
            return
        self.state.forget(container.id)
        self._claims.pop(container.id, None)
        self._bindings.pop(container.id, None)
        self.total_destroyed += 1
        logger.info(f"Removed container {container.id}: {reason}")
        self.bus.publish(
            EventType.CONTAINER_REMOVED,
            {"container_id": container.id, "reason": reason},
            source="pool_manager",
        )

    async def _retire(self, container: Container, reason: str) -> None:
        self.recycled += 1
        await self._remove_container(container, reason)
        await self._replenish("replacing recycled container")

    async def _replenish(self, reason: str) -> list[Container]:
        """Create containers until the pool is back at min size."""
        deficit = self.min_size - len(self.store)
        if deficit <= 0 or not self._accepting:
            return []
        logger.info(f"Pool below min size, creating {deficit} container(s): {reason}")
        return await self.scale_up(deficit, reason)

    # ========================================================================
    # Assignment
    # ========================================================================

    @asynccontextmanager
    async def _track_inflight(self) -> AsyncIterator[None]:
        self._inflight += 1
        self._drained.clear()
        try:
            yield
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._drained.set()

    async def assign(self, job: JobDescriptor) -> Container:
        """
        Bind a job to an available container.

        Args:
            job: Validated job descriptor

        Returns:
            The container, now busy and bound to the job

        Raises:
            PoolExhaustedError: If nothing is available and the pool is at max
            QuotaExceededError: If an on-demand container's limits are rejected
            AssignmentCancelledError: If the claim was cancelled while the
                container was being created
        """
        if not self._accepting:
            self.rejected_assignments += 1
            raise PoolExhaustedError("Pool is shutting down")

        async with self._track_inflight():
            container = self._claim_available(job)
            if container is None:
                container = await self._create_on_demand(job)
            return self._bind(container, job)

    def _claim_available(self, job: JobDescriptor) -> Container | None:
        candidates = [
            c
            for c in self.store.in_state(S.AVAILABLE)
            if c.id not in self._claims and not self.store.has_operation(c.id)
        ]
        if not candidates:
            return None

        metrics = {c.id: self.usage_provider(c.id) for c in candidates}
        chosen = self.optimizer.select(candidates, job, metrics)
        if chosen is None:
            # Least recently used
            chosen = min(
                candidates,
                key=lambda c: (c.last_used_at or 0.0, c.created_at, c.id),
            )
        self._claims[chosen.id] = job.job_id
        return chosen

    async def _create_on_demand(self, job: JobDescriptor) -> Container:
        if len(self.store) >= self.max_size:
            self.rejected_assignments += 1
            raise PoolExhaustedError(
                f"No available container and pool is at max size ({self.max_size})"
            )

        container = self._new_record(f"on-demand for job {job.job_id}", claim_for=job.job_id)
        task = asyncio.ensure_future(self._bring_up(container))
        try:
            # Creation finishes even if the caller goes away
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(lambda _t: self._claims.pop(container.id, None))
            raise

        if result is None:
            self._claims.pop(container.id, None)
            self.rejected_assignments += 1
            raise PoolExhaustedError(
                f"No available container for job {job.job_id}: on-demand creation failed"
            )
        return result

    def _bind(self, container: Container, job: JobDescriptor) -> Container:
        claimed_by = self._claims.pop(container.id, None)
        if claimed_by != job.job_id:
            raise AssignmentCancelledError(
                f"Assignment of container {container.id} to job {job.job_id} was cancelled"
            )
        if not self.state.compare_and_transition(
            container.id, S.AVAILABLE, S.BUSY, f"assigned to job {job.job_id}"
        ):
            self.rejected_assignments += 1
            raise PoolExhaustedError(
                f"Container {container.id} is no longer available "
                f"({container.state.value})"
            )

        now = self.clock()
        container.job_id = job.job_id
        container.assigned_at = now
        container.last_used_at = now
        container.execution_count += 1
        self._bindings[container.id] = job
        self.jobs_assigned += 1
        logger.info(f"Assigned container {container.id} to job {job.job_id}")
        self._publish_status()
        return container

    def cancel_assignment(self, container_id: str) -> bool:
        """
        Release a claim that has not reached busy. No state side effects.

        Returns:
            True if a pending claim was released
        """
        job_id = self._claims.pop(container_id, None)
        if job_id is None:
            return False
        logger.info(f"Cancelled pending assignment of {container_id} to job {job_id}")
        return True

    def pending_claims(self) -> dict[str, str]:
        """Pending claims as container_id -> job_id."""
        return dict(self._claims)

    # ========================================================================
    # Return
    # ========================================================================

    async def return_container(
        self, container_id: str, outcome: JobOutcome | None = None
    ) -> None:
        """
        Unbind the job, clean the workspace and make the container available again.

        Containers that fail the health check, or that the optimizer says are
        worn out, are recycled (and replaced if the pool drops below min).

        Raises:
            UnknownContainerError: If the container is not tracked
            StateTransitionError: If the container is not busy, or another
                return of it is already in progress
        """
        container = self.store.require(container_id)
        if container.state != S.BUSY or container_id in self._returning:
            raise StateTransitionError(container_id, container.state.value, S.AVAILABLE.value)

        # Claimed before the first await so a duplicate return fails untouched
        self._returning.add(container_id)
        try:
            await self._complete_return(container, outcome)
        finally:
            self._returning.discard(container_id)

    async def _complete_return(self, container: Container, outcome: JobOutcome | None) -> None:
        container_id = container.id
        async with self._track_inflight():
            with self.store.operation(container_id):
                now = self.clock()
                job = self._bindings.pop(container_id, None)
                outcome = outcome or JobOutcome()
                if outcome.duration_seconds is not None:
                    duration = outcome.duration_seconds
                else:
                    duration = now - (container.assigned_at or now)

                container.busy_seconds += duration
                container.job_id = None
                container.assigned_at = None
                container.last_used_at = now
                if not outcome.success:
                    container.failure_count += 1
                    self.jobs_failed += 1
                self.jobs_processed += 1
                self.total_job_seconds += duration

                usage = self.usage_provider(container_id)
                if usage and not container.baseline_usage:
                    container.baseline_usage = dict(usage)
                container.efficiency_score = self.optimizer.evaluate_efficiency(
                    container, usage
                )
                if job is not None:
                    await self.optimizer.record_outcome(
                        container, job, outcome, duration, usage
                    )

                self.bus.publish(
                    EventType.JOB_COMPLETED,
                    {
                        "container_id": container_id,
                        "job_id": job.job_id if job else None,
                        "success": outcome.success,
                        "duration": duration,
                    },
                    source="pool_manager",
                )

                reason = self.optimizer.recycle_reason(container, now)
                if reason is None:
                    try:
                        await self._health_check(container)
                    except HealthCheckFailure as e:
                        self.health_check_failures += 1
                        reason = str(e)

                if reason is None:
                    self.state.transition(container_id, S.AVAILABLE, "returned healthy")
                    container.last_idle_at = self.clock()
                    logger.info(f"Container {container_id} returned to pool")
                    self._publish_status()
                    return

                self.state.transition(container_id, S.RECYCLING, reason)

            logger.info(f"Recycling container {container_id}: {reason}")
            await self._retire(container, reason)
            self._publish_status()

    async def _health_check(self, container: Container) -> None:
        """
        Clean the workspace; a non-zero exit means the container is unhealthy.

        Raises:
            HealthCheckFailure: After the configured number of attempts
        """

        async def probe() -> None:
            if container.runtime_id is None:
                raise HealthCheckFailure(container.id, "no runtime id")
            try:
                code = await self.backend.exec_in_container(
                    container.runtime_id, self.config.template.cleanup_command
                )
            except BackendError as e:
                raise HealthCheckFailure(container.id, f"backend error: {e}") from e
            if code != 0:
                raise HealthCheckFailure(
                    container.id, f"workspace cleanup exited with {code}"
                )

        await retry_async(
            probe,
            self.config.state.max_recovery_attempts,
            self.config.state.backoff_base,
            retry_on=(HealthCheckFailure,),
            description=f"health check of {container.id}",
            sleep=self._sleep,
        )

    # ========================================================================
    # Recycling, destruction and scaling
    # ========================================================================

    async def recycle(self, container_id: str, reason: str = "requested") -> bool:
        """
        Recycle an idle container, replacing it if the pool drops below min.

        Returns:
            False if the container is unknown, not available, or claimed
        """
        container = self.store.get(container_id)
        if (
            container is None
            or container.state != S.AVAILABLE
            or container_id in self._claims
            or self.store.has_operation(container_id)
        ):
            return False
        if not self.state.compare_and_transition(
            container_id, S.AVAILABLE, S.RECYCLING, reason
        ):
            return False

        logger.info(f"Recycling container {container_id}: {reason}")
        await self._retire(container, reason)
        self._publish_status()
        return True

    async def destroy(
        self, container_id: str, reason: str = "requested", allow_below_min: bool = False
    ) -> bool:
        """
        Stop and remove a container without replacing it.

        Args:
            container_id: Container to remove
            reason: Logged and published with the removal
            allow_below_min: Permit dropping below min (resize or failure cleanup)

        Raises:
            UnknownContainerError: If the container is not tracked
            StateTransitionError: If the container is busy
        """
        container = self.store.require(container_id)
        if container.state == S.BUSY:
            raise StateTransitionError(container_id, S.BUSY.value, S.STOPPING.value)
        if not allow_below_min and len(self.store) <= self.min_size:
            logger.warning(
                f"Refusing to destroy {container_id}: pool at min size ({self.min_size})"
            )
            return False

        removed = await self._remove_container(container, reason)
        self._publish_status()
        return removed

    async def scale_up(self, count: int, reason: str) -> list[Container]:
        """
        Create up to ``count`` containers without exceeding max.

        Returns:
            The containers that reached available
        """
        room = self.max_size - len(self.store)
        count = min(count, room)
        if count <= 0:
            return []

        # Records are added synchronously so concurrent callers see the slots taken
        records = [self._new_record(reason) for _ in range(count)]
        results = await asyncio.gather(
            *(self._bring_up(c) for c in records), return_exceptions=True
        )

        created = []
        for result in results:
            if isinstance(result, Container):
                created.append(result)
            elif isinstance(result, QuotaExceededError):
                logger.error(f"Container creation rejected by quota: {result}")
            elif isinstance(result, BaseException):
                logger.error(f"Unexpected error creating container: {result}")

        logger.info(f"Scaled up by {len(created)}/{count} ({reason})")
        self._publish_status()
        return created

    async def scale_down(self, count: int, reason: str) -> list[str]:
        """
        Remove up to ``count`` idle containers without going below min.

        Least recently used containers go first.

        Returns:
            Ids of the removed containers
        """
        removable = [
            c
            for c in self.store.in_state(S.AVAILABLE)
            if c.id not in self._claims and not self.store.has_operation(c.id)
        ]
        count = min(count, len(self.store) - self.min_size, len(removable))
        if count <= 0:
            return []

        victims = sorted(
            removable,
            key=lambda c: (c.last_used_at or c.created_at, c.created_at, c.id),
        )[:count]
        # Take them out of available before any await so assign cannot pick them
        for victim in victims:
            self.state.transition(victim.id, S.STOPPING, reason)

        results = await asyncio.gather(
            *(self._remove_container(v, reason) for v in victims)
        )
        removed = [v.id for v, ok in zip(victims, results) if ok]
        logger.info(f"Scaled down by {len(removed)}/{count} ({reason})")
        self._publish_status()
        return removed

    # ========================================================================
    # Drift handling
    # ========================================================================

    async def resolve_orphans(self, report: ReconciliationReport) -> None:
        """
        Resolve drift found by reconciliation.

        Tracked containers missing from the backend are dropped. Untracked
        running backend containers are adopted while the pool has room;
        everything else is force-removed.
        """
        for container_id in report.missing:
            container = self.store.get(container_id)
            if container is not None and container.state == S.ORPHANED:
                await self._remove_container(container, "missing from backend")

        for info in report.untracked:
            if (
                self._accepting
                and info.status == "running"
                and len(self.store) < self.max_size
            ):
                if await self._adopt(info) is not None:
                    continue
            try:
                await self.backend.remove_container(info.runtime_id, force=True)
                self.orphans_removed += 1
                logger.warning(f"Removed orphaned backend container {info.name}")
            except BackendError as e:
                logger.error(f"Failed to remove orphan {info.name}: {e}")

        await self._replenish("replacing orphaned containers")
        self._publish_status()

    async def _adopt(self, info: BackendContainerInfo) -> Container | None:
        cid = info.pool_id if info.pool_id and info.pool_id not in self.store else None
        container = Container(
            id=cid or uuid.uuid4().hex[:12],
            template=self.config.template.name,
            runtime_id=info.runtime_id,
            state=S.ORPHANED,
            created_at=self.clock(),
        )
        self.store.add(container)
        self.state.track(container, f"found untracked backend container {info.name}")

        with self.store.operation(container.id):
            self.state.transition(container.id, S.RUNNING, "adopting orphan")
            try:
                await self._health_check(container)
            except HealthCheckFailure as e:
                logger.warning(f"Not adopting {info.name}: {e}")
                await self._remove_container(container, "adoption health check failed")
                return None
            self.state.transition(container.id, S.AVAILABLE, "adopted")
            container.last_idle_at = self.clock()

        self.orphans_adopted += 1
        logger.info(f"Adopted orphaned container {info.name} as {container.id}")
        return container

    async def handle_state_change(self, payload: dict[str, Any]) -> None:
        """
        React to transitions made outside the pool's own operations.

        failed: remove and replace. running after recovery: health-check and
        make available. stopped after recovery: drop the record.
        """
        container = self.store.get(payload.get("container_id", ""))
        if (
            container is None
            or container.id in self._removing
            or self.store.has_operation(container.id)
        ):
            return

        new_state = payload.get("to")
        reason = payload.get("reason") or new_state
        if new_state == S.FAILED.value and container.state == S.FAILED:
            job = self._bindings.pop(container.id, None)
            if job is not None:
                logger.error(f"Job {job.job_id} lost: container {container.id} failed")
            await self._remove_container(container, reason)
            await self._replenish("replacing failed container")
        elif new_state == S.RUNNING.value and container.state == S.RUNNING:
            with self.store.operation(container.id):
                try:
                    await self._health_check(container)
                except HealthCheckFailure as e:
                    await self._fail_container(container, str(e))
                    return
                self.state.transition(container.id, S.AVAILABLE, "recovered")
                container.last_idle_at = self.clock()
        elif new_state == S.STOPPED.value and container.state == S.STOPPED:
            self._forget(container, reason)
            await self._replenish("replacing stopped container")

    # ========================================================================
    # Shutdown and status
    # ========================================================================

    def stop_accepting(self) -> None:
        self._accepting = False

    async def shutdown(self, drain_timeout: float) -> None:
        """
        Stop accepting work, drain in-flight calls, then remove idle containers.

        Busy containers are left running; their jobs are not interrupted.
        """
        self._accepting = False
        if self._inflight:
            logger.info(f"Draining {self._inflight} in-flight pool operation(s)...")
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Drain timed out after {drain_timeout}s with "
                f"{self._inflight} operation(s) in flight"
            )

        idle = [
            c
            for c in self.store.in_state(S.AVAILABLE, S.RUNNING, S.FAILED, S.ORPHANED)
            if not self.store.has_operation(c.id)
        ]
        await asyncio.gather(
            *(self._remove_container(c, "pool shutdown") for c in idle)
        )

        busy = self.store.in_state(S.BUSY)
        if busy:
            logger.warning(
                f"Leaving {len(busy)} busy container(s) running: "
                + ", ".join(c.id for c in busy)
            )
        logger.info("Pool manager shut down")

    def get_status(self, include_containers: bool = True) -> dict[str, Any]:
        counts = self.store.count_by_state()
        free = counts[S.AVAILABLE.value]
        busy = counts[S.BUSY.value]
        utilization = self.utilization
        status: dict[str, Any] = {
            "size": len(self.store),
            "free": free,
            "busy": busy,
            "utilization": round(utilization, 4),
            "utilization_percent": round(utilization * 100, 2),
            "min_size": self.min_size,
            "target_size": self.target_size,
            "max_size": self.max_size,
            "states": counts,
            "accepting": self._accepting,
            "initialized": self.initialized,
            "pending_claims": len(self._claims),
            "total_created": self.total_created,
            "total_destroyed": self.total_destroyed,
            "creation_failures": self.creation_failures,
            "jobs_assigned": self.jobs_assigned,
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
            "average_job_duration": (
                round(self.total_job_seconds / self.jobs_processed, 3)
                if self.jobs_processed
                else None
            ),
            "rejected_assignments": self.rejected_assignments,
            "health_check_failures": self.health_check_failures,
            "recycled": self.recycled,
            "orphans_adopted": self.orphans_adopted,
            "orphans_removed": self.orphans_removed,
        }
        if include_containers:
            status["containers"] = [c.to_dict() for c in self.store]
        return status

    def _publish_status(self) -> None:
        self.bus.publish(
            EventType.POOL_STATUS_UPDATE,
            self.get_status(include_containers=False),
            source="pool_manager",
        )
