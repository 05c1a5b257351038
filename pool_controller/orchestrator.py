"""
Integrated orchestrator: the single entry point to the container pool.

Wires the components around one event bus, starts and stops them in
dependency order, routes events between them, watches each component's
heartbeat and restarts components that stop ticking.
"""

import asyncio
import logging
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pool_common.backend import ContainerBackend
from pool_common.config import PoolConfig
from pool_common.errors import ScalingConflictError
from pool_common.events import Event, EventBus, EventType
from pool_common.models import (
    Alert,
    AlertLevel,
    Container,
    ContainerState,
    JobDescriptor,
    JobOutcome,
)
from pool_common.repository import PoolRepository

from .docker_backend import DockerBackend
from .pool_manager import PoolManager
from .resource_monitor import ResourceMonitor, SystemProbe
from .reuse_optimizer import ReuseOptimizer
from .scaler import DynamicScaler
from .state_manager import ReconciliationReport, StateManager
from .store import ContainerStore
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)


class Component(Protocol):
    task: PeriodicTask

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class PoolOrchestrator:
    """
    Owns every pool component and exposes assign/return/status to callers.

    Start order: event bus, State Manager, Resource Monitor, Pool Manager
    (initial containers), Dynamic Scaler, Reuse Optimizer, health checks.
    Stop runs the reverse, draining the pool before the monitors go away.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        backend: ContainerBackend | None = None,
        repository: PoolRepository | None = None,
        probe: SystemProbe | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.config = (config or PoolConfig()).validate()
        self.backend = backend or DockerBackend(self.config.backend)
        self.repository = repository
        self.clock = clock

        self.bus = EventBus()
        self.store = ContainerStore()
        self.state_manager = StateManager(
            self.config, self.store, self.backend, self.bus, clock=clock
        )
        self.optimizer = ReuseOptimizer(
            self.config, self.store, self.bus, repository=repository, clock=clock
        )
        self.pool = PoolManager(
            self.config,
            self.backend,
            self.store,
            self.state_manager,
            self.optimizer,
            self.bus,
            clock=clock,
            sleep=sleep,
        )
        self.monitor = ResourceMonitor(
            self.config,
            self.pool,
            self.backend,
            self.bus,
            repository=repository,
            probe=probe,
            clock=clock,
        )
        self.pool.usage_provider = self.monitor.latest_usage
        self.scaler = DynamicScaler(
            self.config, self.pool, self.bus, repository=repository, clock=clock
        )

        self.components: dict[str, Component] = {
            "state_manager": self.state_manager,
            "resource_monitor": self.monitor,
            "dynamic_scaler": self.scaler,
            "reuse_optimizer": self.optimizer,
        }
        self.restarts: Counter[str] = Counter()
        self.failed_components: set[str] = set()
        self._healthy_since: dict[str, float] = {}
        self.health_task = PeriodicTask(
            "orchestrator-health",
            self.check_component_health_once,
            self.config.orchestrator.health_check_interval,
            clock=clock,
            run_immediately=False,
        )
        self._running = False
        self.started_at: float | None = None

        self._subscribe()

    @property
    def running(self) -> bool:
        return self._running

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """
        Start every component and create the initial containers.

        Raises:
            BackendError: If the backend is unreachable
            ContainerCreationError: If fewer than min containers came up
        """
        if self._running:
            logger.warning("Orchestrator already running")
            return

        logger.info("Starting pool orchestrator")
        await self.bus.start()
        if self.repository is not None:
            await self.optimizer.load_patterns()

        await self.state_manager.start()
        await self.monitor.start()
        try:
            await self.pool.initialize()
        except Exception:
            logger.error("Pool initialization failed, stopping components")
            await self.monitor.stop()
            await self.state_manager.stop()
            await self.bus.stop()
            raise

        await self.scaler.start()
        await self.optimizer.start()
        await self.health_task.start()

        self._running = True
        self.started_at = self.clock()
        logger.info(f"Pool orchestrator started with {self.pool.size} containers")

    async def stop(self) -> None:
        """Stop accepting work, drain the pool, then stop every component."""
        if not self._running:
            return

        logger.info("Stopping pool orchestrator")
        self._running = False
        self.pool.stop_accepting()

        await self.health_task.stop()
        await self.scaler.stop()
        await self.optimizer.stop()
        await self.pool.shutdown(self.config.orchestrator.drain_timeout)
        await self.monitor.stop()
        await self.state_manager.stop()
        await self.bus.stop()
        await self.backend.close()
        logger.info("Pool orchestrator stopped")

    # ========================================================================
    # External API
    # ========================================================================

    async def assign_container(self, job: JobDescriptor | dict[str, Any]) -> Container:
        """
        Bind a container to a job.

        Args:
            job: Job descriptor, or its dict form

        Returns:
            The busy container bound to the job

        Raises:
            ValueError: If the job dict is malformed
            PoolExhaustedError: If no container is available and the pool is at max
            QuotaExceededError: If the configured quota is rejected by the backend
        """
        if isinstance(job, dict):
            job = JobDescriptor.from_dict(job)
        return await self.pool.assign(job)

    async def return_container(
        self, container_id: str, outcome: JobOutcome | None = None
    ) -> None:
        await self.pool.return_container(container_id, outcome)

    def cancel_assignment(self, container_id: str) -> bool:
        return self.pool.cancel_assignment(container_id)

    def get_status(self) -> dict[str, Any]:
        """Aggregated view across every component."""
        now = self.clock()
        return {
            "running": self._running,
            "uptime_seconds": round(now - self.started_at, 1) if self.started_at else 0.0,
            "pool": self.pool.get_status(),
            "scaling": {
                **self.scaler.get_stats(),
                "trends": self.scaler.get_utilization_trends(),
            },
            "optimizer": {
                **self.optimizer.get_stats(),
                "efficiency": self.optimizer.get_efficiency_report(),
            },
            "state": self.state_manager.get_stats(),
            "resources": self.monitor.get_stats(),
            "components": self.get_component_health(),
            "events": {
                "published": self.bus.published,
                "handler_errors": self.bus.handler_errors,
            },
        }

    # ========================================================================
    # Component health
    # ========================================================================

    def _heartbeat_timeout(self, task: PeriodicTask) -> float:
        # Slow loops get at least two intervals before they count as stale
        return max(self.config.orchestrator.heartbeat_timeout, task.interval * 2)

    def get_component_health(self) -> dict[str, dict[str, Any]]:
        now = self.clock()
        health = {}
        for name, component in self.components.items():
            task = component.task
            if name in self.failed_components:
                status = "failed"
            elif not task.running:
                status = "stopped"
            elif (
                task.last_heartbeat is None
                or now - task.last_heartbeat > self._heartbeat_timeout(task)
            ):
                status = "stale"
            else:
                status = "healthy"
            health[name] = {
                "status": status,
                "restarts": self.restarts[name],
                **task.get_stats(),
            }
        return health

    async def check_component_health_once(self) -> dict[str, str]:
        """
        Restart components that stopped or stopped emitting heartbeats.

        Returns:
            Component name to status after the check
        """
        statuses = {}
        for name, info in self.get_component_health().items():
            status = info["status"]
            if status in ("stopped", "stale"):
                self._healthy_since.pop(name, None)
                status = await self._restart_component(name, status)
            elif status == "healthy":
                self._forgive_restarts(name)
            statuses[name] = status

        self.bus.publish(
            EventType.COMPONENT_HEARTBEAT,
            {"components": statuses, "timestamp": self.clock()},
            source="orchestrator",
        )
        return statuses

    def _forgive_restarts(self, name: str) -> None:
        if not self.restarts[name]:
            return
        now = self.clock()
        since = self._healthy_since.setdefault(name, now)
        if now - since >= self.config.orchestrator.restart_reset_after:
            logger.info(f"Component {name} stable, resetting restart count")
            self.restarts[name] = 0
            del self._healthy_since[name]

    async def _restart_component(self, name: str, status: str) -> str:
        component = self.components[name]
        self.restarts[name] += 1
        limit = self.config.orchestrator.max_component_restarts

        if self.restarts[name] > limit:
            self.failed_components.add(name)
            await component.stop()
            logger.critical(f"Component {name} exceeded {limit} restarts, giving up")
            alert = Alert(
                id=uuid.uuid4().hex,
                level=AlertLevel.CRITICAL,
                subject="system",
                metric="component_restarts",
                value=float(self.restarts[name]),
                threshold=float(limit),
                message=f"Component {name} failed after {limit} restarts",
                timestamp=self.clock(),
                source="orchestrator",
            )
            self.bus.publish(EventType.RESOURCE_ALERT, {"alert": alert}, source="orchestrator")
            return "failed"

        logger.warning(
            f"Component {name} is {status}, restarting "
            f"(attempt {self.restarts[name]}/{limit})"
        )
        try:
            await component.stop()
            await component.start()
        except Exception as e:
            logger.error(f"Failed to restart component {name}: {e}", exc_info=True)
            return "stopped"
        return "restarted"

    # ========================================================================
    # Event routing
    # ========================================================================

    def _subscribe(self) -> None:
        self.bus.subscribe(EventType.SCALING_EVENT, self._on_scaling_event)
        self.bus.subscribe(EventType.RESOURCE_ALERT, self._on_resource_alert)
        self.bus.subscribe(EventType.ORPHANS_DETECTED, self._on_orphans_detected)
        self.bus.subscribe(EventType.RECYCLE_RECOMMENDED, self._on_recycle_recommended)
        self.bus.subscribe(EventType.OPTIMIZATION_SUGGESTION, self._on_suggestion)
        self.bus.subscribe(EventType.ANOMALY_DETECTED, self._on_anomaly)
        self.bus.subscribe(EventType.CONTAINER_STATE_CHANGED, self._on_state_changed)
        self.bus.subscribe(EventType.CONTAINER_REMOVED, self._on_container_removed)
        self.bus.subscribe(EventType.UTILIZATION_FORECAST, self._on_forecast)

    async def _on_scaling_event(self, event: Event) -> None:
        await self.optimizer.review_once()

    async def _on_resource_alert(self, event: Event) -> None:
        alert = event.payload.get("alert")
        if not isinstance(alert, Alert):
            return
        if event.source != "resource_monitor":
            await self.monitor.record_external_alert(alert)

        if (
            self._running
            and alert.level == AlertLevel.CRITICAL
            and not alert.resolved
            and alert.metric in self.config.monitor.emergency_alert_metrics
        ):
            try:
                await self.scaler.request_emergency_scale_up(
                    f"critical alert: {alert.message}"
                )
            except ScalingConflictError:
                logger.info("Emergency scale-up skipped: scaling already in progress")

    async def _on_orphans_detected(self, event: Event) -> None:
        report = event.payload.get("report")
        if isinstance(report, ReconciliationReport):
            await self.pool.resolve_orphans(report)

    async def _on_recycle_recommended(self, event: Event) -> None:
        container_id = event.payload.get("container_id")
        if container_id:
            await self.pool.recycle(container_id, event.payload.get("reason", "recommended"))

    async def _on_suggestion(self, event: Event) -> None:
        container_id = event.payload.get("container_id")
        if event.payload.get("action") == "recycle_container" and container_id:
            await self.pool.recycle(container_id, event.payload.get("message", "suggested"))

    async def _on_anomaly(self, event: Event) -> None:
        subject = event.payload.get("subject", "")
        if event.payload.get("severity") == "high" and subject in self.store:
            await self.pool.recycle(
                subject, f"{event.payload.get('metric')} anomaly"
            )

    async def _on_state_changed(self, event: Event) -> None:
        if event.payload.get("to") == ContainerState.STOPPED.value:
            self.monitor.forget_subject(event.payload.get("container_id", ""))
        await self.pool.handle_state_change(event.payload)

    def _on_container_removed(self, event: Event) -> None:
        self.monitor.forget_subject(event.payload.get("container_id", ""))

    def _on_forecast(self, event: Event) -> None:
        utilization = event.payload.get("utilization")
        if utilization is not None:
            self.scaler.accept_external_forecast(utilization)
