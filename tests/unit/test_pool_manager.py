"""
Unit tests for the Pool Manager.

The pool runs against the in-memory backend; retries use a no-op sleep so
failure paths complete immediately.
"""

import asyncio

import pytest
from conftest import FakeBackend, make_config, no_sleep

from pool_common.errors import (
    AssignmentCancelledError,
    BackendError,
    ContainerCreationError,
    PoolExhaustedError,
    QuotaExceededError,
    StateTransitionError,
)
from pool_common.events import EventBus, EventType
from pool_common.models import AlertLevel, ContainerState, JobDescriptor, JobOutcome
from pool_controller.pool_manager import PoolManager
from pool_controller.reuse_optimizer import ReuseOptimizer
from pool_controller.state_manager import StateManager
from pool_controller.store import ContainerStore

S = ContainerState


def job(job_id: str = "job-1", repository: str = "org/app", workflow: str = "build"):
    return JobDescriptor(job_id=job_id, repository=repository, workflow=workflow)


class SlowCleanupBackend(FakeBackend):
    """Workspace cleanup yields to the loop, like a real docker exec."""

    async def exec_in_container(self, runtime_id: str, command: str) -> int:
        await asyncio.sleep(0)
        return await super().exec_in_container(runtime_id, command)


def build_pool(config, backend, clock):
    bus = EventBus()
    store = ContainerStore()
    state = StateManager(config, store, backend, bus, clock=clock)
    optimizer = ReuseOptimizer(config, store, bus, clock=clock)
    pool = PoolManager(
        config, backend, store, state, optimizer, bus, clock=clock, sleep=no_sleep
    )
    return pool


class TestInitialization:
    @pytest.mark.asyncio
    async def test_initialize_reaches_target(self, backend, clock):
        pool = build_pool(make_config(min_size=3, target_size=8, max_size=20), backend, clock)

        created = await pool.initialize()

        assert len(created) == 8
        assert all(c.state == S.AVAILABLE for c in pool.store)
        status = pool.get_status()
        assert status["free"] == 8
        assert status["busy"] == 0
        assert status["size"] == 8
        assert status["initialized"] is True
        assert len(backend.containers) == 8

    @pytest.mark.asyncio
    async def test_creation_walks_the_state_graph(self, pool, state_manager):
        await pool.initialize()
        container = next(iter(pool.store))
        states = [r.to_state for r in state_manager.get_history(container.id)]
        assert states == [S.INITIALIZING, S.CREATED, S.STARTING, S.RUNNING, S.AVAILABLE]

    @pytest.mark.asyncio
    async def test_unreachable_backend_fails_fast(self, pool, backend):
        backend.reachable = False
        with pytest.raises(BackendError):
            await pool.initialize()
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_fewer_than_min_fails(self, pool, backend):
        backend.fail_create = 100
        with pytest.raises(ContainerCreationError):
            await pool.initialize()
        assert not pool.initialized


class TestAssignment:
    @pytest.mark.asyncio
    async def test_assign_marks_busy(self, backend, clock):
        pool = build_pool(make_config(min_size=3, target_size=8, max_size=20), backend, clock)
        await pool.initialize()

        container = await pool.assign(job())

        assert container.state == S.BUSY
        assert container.job_id == "job-1"
        assert pool.utilization == pytest.approx(1 / 8)
        assert pool.get_status()["utilization_percent"] == 12.5

    @pytest.mark.asyncio
    async def test_assign_then_return_restores_available(self, pool, backend):
        await pool.initialize()
        container = await pool.assign(job())
        count = container.execution_count

        await pool.return_container(container.id, JobOutcome(success=True, duration_seconds=3.0))

        assert container.state == S.AVAILABLE
        assert container.execution_count == count
        assert container.job_id is None
        assert pool.jobs_processed == 1
        assert (container.runtime_id, pool.config.template.cleanup_command) in backend.exec_calls

    @pytest.mark.asyncio
    async def test_execution_count_increments_once_per_job(self, pool):
        await pool.initialize()
        container = await pool.assign(job())
        assert container.execution_count == 1
        await pool.return_container(container.id)
        assert container.execution_count == 1

    @pytest.mark.asyncio
    async def test_least_recently_used_container_chosen(self, pool, clock):
        await pool.initialize()
        first = await pool.assign(job("a"))
        clock.advance(10)
        await pool.return_container(first.id)

        # Unrelated job: no pattern matches, so plain LRU applies
        second = await pool.assign(job("b", repository="org/other", workflow="lint"))
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_creates_on_demand_below_max(self, pool):
        await pool.initialize()
        containers = [await pool.assign(job(f"j{i}")) for i in range(4)]

        assert len({c.id for c in containers}) == 4
        assert pool.size == 4
        assert all(c.state == S.BUSY for c in containers)

    @pytest.mark.asyncio
    async def test_exhausted_at_max(self, pool):
        await pool.initialize()
        for i in range(5):
            await pool.assign(job(f"j{i}"))

        with pytest.raises(PoolExhaustedError):
            await pool.assign(job("one-too-many"))
        assert pool.size == 5
        assert pool.rejected_assignments == 1

    @pytest.mark.asyncio
    async def test_concurrent_assignments_never_share_a_container(self, pool):
        await pool.initialize()
        containers = await asyncio.gather(*(pool.assign(job(f"j{i}")) for i in range(5)))

        assert len({c.id for c in containers}) == 5
        assert all(c.state == S.BUSY for c in containers)

    @pytest.mark.asyncio
    async def test_quota_error_reaches_caller(self, backend, clock):
        pool = build_pool(make_config(min_size=1, target_size=1, max_size=3), backend, clock)
        await pool.initialize()
        await pool.assign(job("a"))

        backend.quota_error = True
        with pytest.raises(QuotaExceededError):
            await pool.assign(job("b"))
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_return_requires_busy(self, pool):
        await pool.initialize()
        container = next(iter(pool.store))
        with pytest.raises(StateTransitionError):
            await pool.return_container(container.id)

    @pytest.mark.asyncio
    async def test_concurrent_returns_complete_once(self, clock):
        backend = SlowCleanupBackend()
        pool = build_pool(make_config(min_size=1, target_size=1, max_size=2), backend, clock)
        await pool.initialize()
        container = await pool.assign(job())

        results = await asyncio.gather(
            pool.return_container(container.id, JobOutcome(duration_seconds=5.0)),
            pool.return_container(container.id, JobOutcome(duration_seconds=5.0)),
            return_exceptions=True,
        )

        assert results[0] is None
        assert isinstance(results[1], StateTransitionError)
        assert pool.jobs_processed == 1
        assert container.busy_seconds == 5.0
        assert len(backend.exec_calls) == 1
        assert container.state == S.AVAILABLE

        # The container can be assigned and returned again afterwards
        again = await pool.assign(job("job-2"))
        await pool.return_container(again.id)
        assert pool.jobs_processed == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_pending_claim(self, backend, clock):
        pool = build_pool(make_config(min_size=1, target_size=1, max_size=3), backend, clock)
        await pool.initialize()
        await pool.assign(job("running"))

        backend.create_gate = asyncio.Event()
        pending = asyncio.create_task(pool.assign(job("withdrawn")))
        for _ in range(10):
            if pool.pending_claims():
                break
            await asyncio.sleep(0)

        [(container_id, job_id)] = pool.pending_claims().items()
        assert job_id == "withdrawn"
        assert pool.cancel_assignment(container_id)
        assert not pool.cancel_assignment(container_id)

        backend.create_gate.set()
        with pytest.raises(AssignmentCancelledError):
            await pending

        container = pool.store.get(container_id)
        assert container.state == S.AVAILABLE
        assert container.execution_count == 0

        # The released container serves the next job
        reused = await pool.assign(job("next"))
        assert reused.id == container_id


class TestFailures:
    @pytest.mark.asyncio
    async def test_creation_failure_marks_failed_and_alerts(self, pool, backend, bus, state_manager):
        await pool.initialize()
        size = pool.size
        backend.fail_create = 3
        calls = backend.create_calls

        created = await pool.scale_up(1, "test")
        events = []
        bus.subscribe_all(lambda e: events.append(e))
        await bus.flush()

        assert created == []
        assert backend.create_calls - calls == 3
        assert pool.size == size
        assert pool.creation_failures == 1

        failed = [r for r in state_manager.history if r.to_state == S.FAILED]
        assert len(failed) == 1
        alerts = [e.payload["alert"] for e in events if e.type == EventType.RESOURCE_ALERT]
        assert len(alerts) == 1
        assert alerts[0].level == AlertLevel.CRITICAL
        assert alerts[0].subject == failed[0].container_id

    @pytest.mark.asyncio
    async def test_transient_creation_failure_is_retried(self, pool, backend):
        await pool.initialize()
        backend.fail_create = 2
        created = await pool.scale_up(1, "test")
        assert len(created) == 1
        assert created[0].state == S.AVAILABLE

    @pytest.mark.asyncio
    async def test_unhealthy_return_is_recycled_and_replaced(self, backend, clock):
        pool = build_pool(make_config(min_size=2, target_size=2, max_size=5), backend, clock)
        await pool.initialize()
        container = await pool.assign(job())
        backend.fail_exec.add(container.runtime_id)

        await pool.return_container(container.id, JobOutcome(success=False))

        assert container.id not in pool.store
        assert container.runtime_id in backend.removed
        assert pool.size == 2
        assert pool.recycled == 1
        assert pool.health_check_failures == 1
        assert all(c.state == S.AVAILABLE for c in pool.store)

    @pytest.mark.asyncio
    async def test_worn_out_container_recycled_on_return(self, pool):
        pool.optimizer.config.max_reuse_count = 1
        await pool.initialize()
        container = await pool.assign(job())

        await pool.return_container(container.id)

        assert container.id not in pool.store
        assert pool.recycled == 1

    @pytest.mark.asyncio
    async def test_failed_container_is_replaced(self, backend, clock):
        pool = build_pool(make_config(min_size=3, target_size=3, max_size=5), backend, clock)
        await pool.initialize()
        container = next(iter(pool.store))
        pool.state.mark_failed(container.id, "backend reports exited")

        await pool.handle_state_change({"container_id": container.id, "to": "failed"})

        assert container.id not in pool.store
        assert pool.size == 3


class TestScaling:
    @pytest.mark.asyncio
    async def test_scale_up_capped_at_max(self, pool):
        await pool.initialize()
        created = await pool.scale_up(10, "burst")
        assert len(created) == 2
        assert pool.size == 5

    @pytest.mark.asyncio
    async def test_scale_down_not_below_min(self, pool):
        await pool.initialize()
        removed = await pool.scale_down(10, "idle")
        assert len(removed) == 1
        assert pool.size == 2

    @pytest.mark.asyncio
    async def test_scale_down_skips_busy(self, pool):
        await pool.initialize()
        busy = [await pool.assign(job(f"j{i}")) for i in range(3)]
        assert await pool.scale_down(1, "idle") == []
        assert all(c.state == S.BUSY for c in busy)

    @pytest.mark.asyncio
    async def test_destroy_respects_min(self, pool):
        await pool.initialize()
        first, second, third = list(pool.store)
        assert await pool.destroy(first.id)
        assert not await pool.destroy(second.id)
        assert await pool.destroy(second.id, allow_below_min=True)
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_recycle_only_idle_containers(self, pool):
        await pool.initialize()
        busy = await pool.assign(job())
        idle = next(c for c in pool.store if c.state == S.AVAILABLE)

        assert not await pool.recycle(busy.id)
        assert await pool.recycle(idle.id, "efficiency dropped")
        assert idle.id not in pool.store
        assert pool.size == 2


class TestOrphans:
    @pytest.mark.asyncio
    async def test_untracked_running_container_is_adopted(self, pool, backend, state_manager, clock):
        await pool.initialize()
        backend.add_untracked("ci-pool-0123456789ab")
        clock.advance(1)

        report = await state_manager.reconcile_once()
        await pool.resolve_orphans(report)

        adopted = pool.store.get("0123456789ab")
        assert adopted is not None
        assert adopted.state == S.AVAILABLE
        assert pool.orphans_adopted == 1

    @pytest.mark.asyncio
    async def test_untracked_container_removed_at_max(self, backend, clock):
        pool = build_pool(make_config(min_size=1, target_size=2, max_size=2), backend, clock)
        await pool.initialize()
        stray = backend.add_untracked("someone-elses-container")
        clock.advance(1)

        report = await pool.state.reconcile_once()
        await pool.resolve_orphans(report)

        assert stray in backend.removed
        assert pool.size == 2
        assert pool.orphans_removed == 1

    @pytest.mark.asyncio
    async def test_missing_container_dropped_and_replaced(self, backend, clock):
        pool = build_pool(make_config(min_size=3, target_size=3, max_size=5), backend, clock)
        state_manager = pool.state
        await pool.initialize()
        victim = next(iter(pool.store))
        backend.containers.pop(victim.runtime_id)
        clock.advance(1)

        report = await state_manager.reconcile_once()
        assert report.missing == [victim.id]
        await pool.resolve_orphans(report)

        assert victim.id not in pool.store
        assert pool.size == 3


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_leaves_busy_containers(self, pool, backend):
        await pool.initialize()
        busy = await pool.assign(job())

        await pool.shutdown(drain_timeout=1)

        assert [c.id for c in pool.store] == [busy.id]
        assert busy.runtime_id in backend.containers
        with pytest.raises(PoolExhaustedError):
            await pool.assign(job("late"))

    @pytest.mark.asyncio
    async def test_status_reports_totals(self, pool):
        await pool.initialize()
        container = await pool.assign(job())
        await pool.return_container(container.id, JobOutcome(duration_seconds=4.0))

        status = pool.get_status()
        assert status["total_created"] == 3
        assert status["jobs_processed"] == 1
        assert status["average_job_duration"] == 4.0
        assert len(status["containers"]) == 3
