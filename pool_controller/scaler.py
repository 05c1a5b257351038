"""
Dynamic scaling control loop.

The scaler samples pool utilization (busy / online) on a fixed interval and
decides whether to grow or shrink the pool: reactive thresholds with
independent cooldowns per direction, an emergency path with a larger
increment and shorter cooldown, and a predictive path driven by Holt
exponential smoothing blended with hour-of-day seasonal averages. Decisions
are dispatched to the Pool Manager; the scaler never touches containers.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pool_common.config import PoolConfig
from pool_common.errors import ScalingConflictError
from pool_common.events import EventBus, EventType
from pool_common.models import ScalingDirection, ScalingEvent
from pool_common.repository import PoolRepository

from .pool_manager import PoolManager
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)

Decision = tuple[ScalingDirection, int, str]

_TRIM_EVERY = 50


class DynamicScaler:
    """
    Serialized scaling decisions for one pool.

    A single in-flight guard covers both the periodic evaluation and
    emergency requests: an evaluation that finds a scale operation running
    is skipped, not queued.
    """

    def __init__(
        self,
        config: PoolConfig,
        pool: PoolManager,
        bus: EventBus,
        repository: PoolRepository | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config.scaling
        self.min_size = config.size.min_size
        self.max_size = config.size.max_size
        self.pool = pool
        self.bus = bus
        self.repository = repository
        self.clock = clock

        self.history: deque[ScalingEvent] = deque(maxlen=self.config.history_size)
        self.samples: deque[tuple[float, float]] = deque(maxlen=self.config.history_size)

        # Holt smoothing state
        self._level: float | None = None
        self._trend = 0.0
        buckets = self.config.seasonal_buckets
        self._seasonal_sum = [0.0] * buckets
        self._seasonal_count = [0] * buckets
        self._external_forecast: tuple[float, float] | None = None  # (value, expires_at)

        self._last_up: float | None = None
        self._last_emergency: float | None = None
        self._last_down: float | None = None
        self._low_since: float | None = None
        self._consecutive_ups = 0
        self._consecutive_downs = 0
        self._scaling_in_progress = False
        self._events_since_trim = 0

        self.evaluations = 0
        self.skipped = 0
        self.suppressed = 0

        self.task = PeriodicTask(
            "dynamic-scaler",
            self.evaluate_once,
            self.config.evaluation_interval,
            clock=clock,
            run_immediately=False,
        )

    async def start(self) -> None:
        await self.task.start()
        logger.info("Dynamic scaler started")

    async def stop(self) -> None:
        await self.task.stop()
        logger.info("Dynamic scaler stopped")

    @property
    def scaling_in_progress(self) -> bool:
        return self._scaling_in_progress

    # ========================================================================
    # Forecasting
    # ========================================================================

    def _bucket(self, ts: float) -> int:
        hour = datetime.fromtimestamp(ts, UTC).hour
        return hour * self.config.seasonal_buckets // 24

    def record_utilization(self, utilization: float, timestamp: float | None = None) -> None:
        """Feed one utilization sample into the smoothing and seasonal state."""
        ts = self.clock() if timestamp is None else timestamp
        self.samples.append((ts, utilization))

        alpha = self.config.smoothing_alpha
        beta = self.config.trend_beta
        if self._level is None:
            self._level = utilization
            self._trend = 0.0
        else:
            previous = self._level
            self._level = alpha * utilization + (1 - alpha) * (self._level + self._trend)
            self._trend = beta * (self._level - previous) + (1 - beta) * self._trend

        bucket = self._bucket(ts)
        self._seasonal_sum[bucket] += utilization
        self._seasonal_count[bucket] += 1

    def accept_external_forecast(self, utilization: float, ttl: float | None = None) -> None:
        """Accept a utilization forecast from trend extrapolation elsewhere."""
        ttl = self.config.external_forecast_ttl if ttl is None else ttl
        self._external_forecast = (min(1.0, max(0.0, utilization)), self.clock() + ttl)

    def forecast(self, horizon_seconds: float | None = None) -> float:
        """
        Forecast utilization ``horizon_seconds`` ahead (capped at 24h).

        Returns:
            Utilization in [0, 1]; 0.0 before any sample has been recorded
        """
        if self._level is None:
            return 0.0
        horizon = self.config.forecast_horizon if horizon_seconds is None else horizon_seconds
        horizon = min(max(horizon, 0.0), 86400.0)
        now = self.clock()

        steps = horizon / self.config.evaluation_interval
        value = self._level + self._trend * steps

        if len(self.samples) >= self.config.min_data_points:
            bucket = self._bucket(now + horizon)
            if self._seasonal_count[bucket]:
                seasonal = self._seasonal_sum[bucket] / self._seasonal_count[bucket]
                weight = self.config.seasonal_weight
                value = (1 - weight) * value + weight * seasonal

        if self._external_forecast is not None:
            external, expires_at = self._external_forecast
            if now <= expires_at:
                value = max(value, external)
            else:
                self._external_forecast = None

        return min(1.0, max(0.0, value))

    # ========================================================================
    # Decisions
    # ========================================================================

    def _cooling_down(self, direction: ScalingDirection, now: float) -> bool:
        cfg = self.config
        if direction == ScalingDirection.DOWN:
            return self._last_down is not None and now - self._last_down < cfg.down_cooldown

        last_growth = max(
            (t for t in (self._last_up, self._last_emergency) if t is not None),
            default=None,
        )
        if last_growth is None:
            return False
        cooldown = cfg.emergency_cooldown if direction == ScalingDirection.EMERGENCY else cfg.up_cooldown
        return now - last_growth < cooldown

    def decide(self, utilization: float, size: int, now: float) -> Decision | None:
        """
        Pure policy step: what to do given current utilization and pool size.

        Updates only the idle-duration bookkeeping.
        """
        cfg = self.config
        if utilization <= cfg.down_threshold:
            if self._low_since is None:
                self._low_since = now
        else:
            self._low_since = None

        predicted = None
        if cfg.predictive_enabled and len(self.samples) >= cfg.min_data_points:
            predicted = self.forecast()

        if utilization >= cfg.up_threshold or (
            predicted is not None and predicted >= cfg.up_threshold
        ):
            if size >= self.max_size:
                logger.debug(f"Utilization {utilization:.0%} but pool at max ({size})")
                return None

            if utilization >= cfg.emergency_threshold:
                direction = ScalingDirection.EMERGENCY
                count = cfg.emergency_increment
                reason = (
                    f"utilization {utilization:.0%} >= emergency threshold "
                    f"{cfg.emergency_threshold:.0%}"
                )
            elif utilization >= cfg.up_threshold:
                direction = ScalingDirection.UP
                # Sustained pressure grows the step
                count = cfg.up_increment + (1 if self._consecutive_ups >= 2 else 0)
                reason = f"utilization {utilization:.0%} >= {cfg.up_threshold:.0%}"
            else:
                direction = ScalingDirection.UP
                count = cfg.up_increment
                reason = (
                    f"forecast {predicted:.0%} >= {cfg.up_threshold:.0%} "
                    f"(current {utilization:.0%})"
                )

            if self._cooling_down(direction, now):
                self.suppressed += 1
                logger.debug(f"Scale {direction.value} suppressed by cooldown: {reason}")
                return None
            return direction, min(count, self.max_size - size), reason

        if (
            utilization <= cfg.down_threshold
            and self._low_since is not None
            and now - self._low_since >= cfg.idle_grace_period
            and size > self.min_size
        ):
            if predicted is not None and predicted > cfg.down_threshold:
                logger.info(
                    f"Scale-down vetoed: forecast {predicted:.0%} above "
                    f"{cfg.down_threshold:.0%}"
                )
                return None
            if self._cooling_down(ScalingDirection.DOWN, now):
                self.suppressed += 1
                return None
            # Repeated shrinking takes smaller steps
            count = max(1, cfg.down_increment - self._consecutive_downs // 2)
            reason = (
                f"utilization {utilization:.0%} <= {cfg.down_threshold:.0%} "
                f"for {now - self._low_since:.0f}s"
            )
            return ScalingDirection.DOWN, min(count, size - self.min_size), reason

        return None

    async def evaluate_once(self) -> ScalingEvent | None:
        """One evaluation tick. Skipped if a scaling operation is in flight."""
        if self._scaling_in_progress:
            self.skipped += 1
            logger.debug("Scaling in progress, skipping evaluation")
            return None

        self._scaling_in_progress = True
        try:
            now = self.clock()
            utilization = self.pool.utilization
            size = self.pool.size
            self.record_utilization(utilization, now)
            self.evaluations += 1

            if not self.pool.accepting:
                return None
            decision = self.decide(utilization, size, now)
            if decision is None:
                return None
            direction, count, reason = decision
            return await self._execute(direction, count, reason, utilization, now)
        finally:
            self._scaling_in_progress = False

    async def request_emergency_scale_up(self, reason: str) -> ScalingEvent | None:
        """
        Scale up immediately, bypassing the normal up-cooldown.

        Honors the emergency cooldown and max size.

        Raises:
            ScalingConflictError: If a scaling operation is already in flight
        """
        if self._scaling_in_progress:
            raise ScalingConflictError("Scaling already in progress")

        now = self.clock()
        if self._cooling_down(ScalingDirection.EMERGENCY, now):
            logger.info(f"Emergency scale-up suppressed by cooldown: {reason}")
            self.suppressed += 1
            return None
        room = self.max_size - self.pool.size
        if room <= 0 or not self.pool.accepting:
            logger.warning(f"Emergency scale-up not possible (pool at max): {reason}")
            return None

        self._scaling_in_progress = True
        try:
            return await self._execute(
                ScalingDirection.EMERGENCY,
                min(self.config.emergency_increment, room),
                reason,
                self.pool.utilization,
                now,
            )
        finally:
            self._scaling_in_progress = False

    async def _execute(
        self,
        direction: ScalingDirection,
        count: int,
        reason: str,
        utilization: float,
        now: float,
    ) -> ScalingEvent:
        before = self.pool.size
        logger.info(f"Scaling {direction.value} by {count}: {reason}")

        if direction == ScalingDirection.DOWN:
            self._last_down = now
            removed = await self.pool.scale_down(count, reason)
            delta = -len(removed)
            self._consecutive_downs += 1
            self._consecutive_ups = 0
        else:
            if direction == ScalingDirection.EMERGENCY:
                self._last_emergency = now
            else:
                self._last_up = now
            created = await self.pool.scale_up(count, reason)
            delta = len(created)
            self._consecutive_ups += 1
            self._consecutive_downs = 0

        event = ScalingEvent(
            direction=direction,
            delta=delta,
            reason=reason,
            timestamp=now,
            requested=count,
            pool_size_before=before,
            pool_size_after=self.pool.size,
            utilization=round(utilization, 4),
        )
        await self._record(event)
        return event

    async def _record(self, event: ScalingEvent) -> None:
        self.history.append(event)
        if self.repository is not None:
            try:
                event.id = await self.repository.add_scaling_event(event)
                self._events_since_trim += 1
                if self._events_since_trim >= _TRIM_EVERY:
                    self._events_since_trim = 0
                    await self.repository.trim_scaling_events(self.config.history_size)
            except Exception as e:
                logger.error(f"Failed to persist scaling event: {e}", exc_info=True)
        self.bus.publish(EventType.SCALING_EVENT, event.to_dict(), source="dynamic_scaler")

    # ========================================================================
    # Reporting
    # ========================================================================

    def get_history(self, limit: int = 50) -> list[ScalingEvent]:
        if limit <= 0:
            return []
        return list(self.history)[-limit:]

    def get_utilization_trends(self, window_seconds: float = 3600.0) -> dict[str, Any]:
        now = self.clock()
        points = [(t, u) for t, u in self.samples if t >= now - window_seconds]
        if not points:
            return {"samples": 0, "window_seconds": window_seconds}

        values = [u for _, u in points]
        slope = 0.0
        if len(points) >= 2:
            mean_t = sum(t for t, _ in points) / len(points)
            mean_u = sum(values) / len(values)
            var_t = sum((t - mean_t) ** 2 for t, _ in points)
            if var_t > 0:
                slope = sum((t - mean_t) * (u - mean_u) for t, u in points) / var_t

        per_hour = slope * 3600
        if per_hour > 0.05:
            direction = "increasing"
        elif per_hour < -0.05:
            direction = "decreasing"
        else:
            direction = "stable"

        return {
            "samples": len(points),
            "window_seconds": window_seconds,
            "current": values[-1],
            "average": round(sum(values) / len(values), 4),
            "min": min(values),
            "max": max(values),
            "slope_per_hour": round(per_hour, 4),
            "direction": direction,
            "forecast": round(self.forecast(), 4),
        }

    def get_stats(self) -> dict[str, Any]:
        counts = {d.value: 0 for d in ScalingDirection}
        for event in self.history:
            counts[event.direction.value] += 1
        return {
            "evaluations": self.evaluations,
            "skipped": self.skipped,
            "suppressed_by_cooldown": self.suppressed,
            "scaling_in_progress": self._scaling_in_progress,
            "events": counts,
            "last_event": self.history[-1].to_dict() if self.history else None,
            "forecast": round(self.forecast(), 4),
            "level": self._level,
            "trend": self._trend,
            "consecutive_ups": self._consecutive_ups,
            "consecutive_downs": self._consecutive_downs,
        }
