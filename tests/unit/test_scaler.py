"""
Unit tests for the Dynamic Scaler.

Utilization is driven by assigning jobs on a real Pool Manager over the
in-memory backend; time only moves when the test advances the clock.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import make_config, no_sleep

from pool_common.errors import ScalingConflictError
from pool_common.events import EventBus, EventType
from pool_common.models import JobDescriptor, ScalingDirection
from pool_controller.pool_manager import PoolManager
from pool_controller.reuse_optimizer import ReuseOptimizer
from pool_controller.scaler import DynamicScaler
from pool_controller.state_manager import StateManager
from pool_controller.store import ContainerStore


def build(config, backend, clock, repository=None):
    bus = EventBus()
    store = ContainerStore()
    state = StateManager(config, store, backend, bus, clock=clock)
    optimizer = ReuseOptimizer(config, store, bus, clock=clock)
    pool = PoolManager(
        config, backend, store, state, optimizer, bus, clock=clock, sleep=no_sleep
    )
    scaler = DynamicScaler(config, pool, bus, repository=repository, clock=clock)
    return pool, scaler


async def occupy(pool, count):
    return [
        await pool.assign(JobDescriptor(f"job-{pool.jobs_assigned}", "org/app", "build"))
        for _ in range(count)
    ]


class TestReactiveScaling:
    @pytest.mark.asyncio
    async def test_high_utilization_scales_up(self, backend, clock):
        pool, scaler = build(make_config(3, 8, 20), backend, clock)
        await pool.initialize()
        await occupy(pool, 7)

        event = await scaler.evaluate_once()

        assert event is not None
        assert event.direction == ScalingDirection.UP
        assert event.delta == 2
        assert event.pool_size_before == 8
        assert event.pool_size_after == 10
        assert event.utilization == 0.875
        assert pool.size == 10

    @pytest.mark.asyncio
    async def test_saturation_triggers_emergency(self, backend, clock):
        pool, scaler = build(make_config(3, 8, 20), backend, clock)
        await pool.initialize()
        await occupy(pool, 8)

        event = await scaler.evaluate_once()

        assert event.direction == ScalingDirection.EMERGENCY
        assert event.delta == 4
        assert pool.size == 12

    @pytest.mark.asyncio
    async def test_never_exceeds_max(self, backend, clock):
        pool, scaler = build(make_config(1, 4, 5), backend, clock)
        await pool.initialize()
        await occupy(pool, 4)

        event = await scaler.evaluate_once()

        assert event.delta == 1
        assert pool.size == 5
        await occupy(pool, 1)
        clock.advance(60)
        assert await scaler.evaluate_once() is None

    @pytest.mark.asyncio
    async def test_up_cooldown(self, backend, clock):
        pool, scaler = build(make_config(3, 8, 20), backend, clock)
        await pool.initialize()
        await occupy(pool, 7)
        first = await scaler.evaluate_once()

        await occupy(pool, 2)  # 9 of 10 busy
        assert await scaler.evaluate_once() is None
        assert scaler.suppressed == 1

        clock.advance(31)
        second = await scaler.evaluate_once()
        assert second.direction == ScalingDirection.UP
        assert second.timestamp - first.timestamp >= 30

    @pytest.mark.asyncio
    async def test_emergency_has_its_own_shorter_cooldown(self, backend, clock):
        pool, scaler = build(make_config(3, 8, 20), backend, clock)
        await pool.initialize()
        await occupy(pool, 7)
        await scaler.evaluate_once()  # up at t0

        await occupy(pool, 3)  # 10 of 10 busy
        clock.advance(5)
        assert await scaler.evaluate_once() is None

        clock.advance(10)
        event = await scaler.evaluate_once()
        assert event.direction == ScalingDirection.EMERGENCY

    @pytest.mark.asyncio
    async def test_idle_pool_scales_down_to_min(self, backend, clock):
        pool, scaler = build(make_config(3, 8, 20), backend, clock)
        await pool.initialize()

        assert await scaler.evaluate_once() is None  # grace period starts
        clock.advance(121)

        events = []
        for _ in range(20):
            event = await scaler.evaluate_once()
            if event is not None:
                events.append(event)
            assert pool.size >= 3
            clock.advance(60)

        assert pool.size == 3
        assert all(e.direction == ScalingDirection.DOWN for e in events)
        assert sum(e.delta for e in events) == -5
        gaps = [b.timestamp - a.timestamp for a, b in zip(events, events[1:])]
        assert all(gap >= 180 for gap in gaps)

    @pytest.mark.asyncio
    async def test_activity_resets_grace_period(self, backend, clock):
        pool, scaler = build(make_config(1, 4, 20), backend, clock)
        await pool.initialize()

        await scaler.evaluate_once()
        clock.advance(100)
        busy = await occupy(pool, 2)  # 50%: no longer idle
        await scaler.evaluate_once()
        for container in busy:
            await pool.return_container(container.id)

        clock.advance(30)
        assert await scaler.evaluate_once() is None
        assert pool.size == 4


class TestPredictiveScaling:
    def feed(self, scaler, clock, values):
        for value in values:
            scaler.record_utilization(value, clock())
            clock.advance(30)

    def test_forecast_without_samples(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        assert scaler.forecast() == 0.0

    def test_forecast_follows_rising_trend(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        self.feed(scaler, clock, [0.1, 0.2, 0.3, 0.4, 0.5])
        assert scaler.forecast(600) > 0.5
        assert 0.0 <= scaler.forecast(86400 * 7) <= 1.0

    def test_forecast_is_clamped(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        self.feed(scaler, clock, [0.9, 0.95, 1.0, 1.0])
        assert scaler.forecast() <= 1.0

    def test_predicted_rise_scales_up_early(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        self.feed(scaler, clock, [0.5] * 10)
        scaler.accept_external_forecast(0.9)

        decision = scaler.decide(0.5, 5, clock())

        assert decision is not None
        direction, count, reason = decision
        assert direction == ScalingDirection.UP
        assert count == 2
        assert "forecast" in reason

    def test_external_forecast_expires(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        self.feed(scaler, clock, [0.5] * 10)
        scaler.accept_external_forecast(0.9, ttl=60)
        clock.advance(61)
        assert scaler.decide(0.5, 5, clock()) is None

    def test_forecast_rise_vetoes_scale_down(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        self.feed(scaler, clock, [0.1] * 10)
        scaler.accept_external_forecast(0.5, ttl=3600)

        assert scaler.decide(0.1, 5, clock()) is None
        clock.advance(121)
        assert scaler.decide(0.1, 5, clock()) is None

    def test_utilization_trends(self, backend, clock):
        _, scaler = build(make_config(), backend, clock)
        assert scaler.get_utilization_trends()["samples"] == 0

        self.feed(scaler, clock, [0.1, 0.3, 0.5, 0.7])
        trends = scaler.get_utilization_trends()

        assert trends["samples"] == 4
        assert trends["direction"] == "increasing"
        assert trends["max"] == 0.7


class TestSerialization:
    @pytest.mark.asyncio
    async def test_evaluation_skipped_while_scaling(self, backend, clock):
        pool, scaler = build(make_config(1, 2, 10), backend, clock)
        await pool.initialize()
        await occupy(pool, 2)

        backend.create_gate = asyncio.Event()
        running = asyncio.create_task(scaler.evaluate_once())
        for _ in range(10):
            if scaler.scaling_in_progress:
                break
            await asyncio.sleep(0)

        assert await scaler.evaluate_once() is None
        assert scaler.skipped == 1
        with pytest.raises(ScalingConflictError):
            await scaler.request_emergency_scale_up("critical alert")

        backend.create_gate.set()
        event = await running
        assert event.direction == ScalingDirection.EMERGENCY
        assert not scaler.scaling_in_progress

    @pytest.mark.asyncio
    async def test_emergency_request_bypasses_up_cooldown(self, backend, clock):
        pool, scaler = build(make_config(3, 8, 20), backend, clock)
        await pool.initialize()
        await occupy(pool, 7)
        await scaler.evaluate_once()

        clock.advance(11)
        event = await scaler.request_emergency_scale_up("critical alert: utilization")
        assert event.direction == ScalingDirection.EMERGENCY
        assert event.delta == 4

        # The emergency cooldown still applies
        assert await scaler.request_emergency_scale_up("again") is None

    @pytest.mark.asyncio
    async def test_events_persisted_and_published(self, backend, clock):
        repository = AsyncMock()
        repository.add_scaling_event = AsyncMock(return_value=7)
        pool, scaler = build(make_config(3, 8, 20), backend, clock, repository=repository)
        await pool.initialize()
        await occupy(pool, 7)

        published = []
        pool.bus.subscribe(EventType.SCALING_EVENT, lambda e: published.append(e.payload))

        event = await scaler.evaluate_once()
        await pool.bus.flush()

        assert event.id == 7
        repository.add_scaling_event.assert_awaited_once_with(event)
        assert published == [event.to_dict()]
        assert scaler.get_history() == [event]
        assert scaler.get_history(limit=0) == []
        assert scaler.get_stats()["events"]["up"] == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_is_logged_not_raised(self, backend, clock):
        repository = AsyncMock()
        repository.add_scaling_event = AsyncMock(side_effect=RuntimeError("disk full"))
        pool, scaler = build(make_config(3, 8, 20), backend, clock, repository=repository)
        await pool.initialize()
        await occupy(pool, 7)

        event = await scaler.evaluate_once()
        assert event is not None
        assert event.id is None
