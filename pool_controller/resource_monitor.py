"""
Resource monitoring for the host and every pooled container.

Samples system metrics through psutil and container metrics through the
backend's stats call on a fixed interval, keeps a rolling window per
subject and metric, and turns what it sees into events:

- threshold alerts (warning/critical pairs per metric, cooldown per key,
  auto-resolved once the metric drops below the warning level)
- z-score anomalies over the rolling window
- utilization forecasts from trend extrapolation, consumed by the scaler
- optimization suggestions (over-provisioned or saturated containers,
  pool sized too large or too small)
"""

import logging
import math
import os
import statistics
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

import psutil

from pool_common.backend import ContainerBackend
from pool_common.config import PoolConfig
from pool_common.errors import BackendError, ResourceThresholdExceeded
from pool_common.events import EventBus, EventType
from pool_common.models import Alert, AlertLevel, ContainerState, ResourceSample
from pool_common.repository import PoolRepository

from .pool_manager import PoolManager
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)

SYSTEM = "system"
POOL = "pool"

AGGREGATION_WINDOWS = {"1m": 60.0, "5m": 300.0, "15m": 900.0, "1h": 3600.0}

MetricKey = tuple[str, str]  # (subject, metric)


class SystemProbe:
    """Host metrics via psutil. Network usage is a rate between two calls."""

    def __init__(
        self,
        network_capacity_mbps: float = 1000.0,
        disk_path: str = "/",
        clock: Callable[[], float] = time.time,
    ):
        self.capacity_bytes_per_second = network_capacity_mbps * 1_000_000 / 8
        self.disk_path = disk_path
        self.clock = clock
        self._last_network: tuple[float, int] | None = None
        # Prime the counter; the first interval=None call always returns 0.0
        psutil.cpu_percent(interval=None)

    def sample(self) -> ResourceSample:
        now = self.clock()
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(self.disk_path)

        network_bytes = None
        network_percent = None
        counters = psutil.net_io_counters()
        if counters is not None:
            network_bytes = counters.bytes_sent + counters.bytes_recv
            if self._last_network is not None:
                last_ts, last_bytes = self._last_network
                elapsed = now - last_ts
                if elapsed > 0 and network_bytes >= last_bytes:
                    rate = (network_bytes - last_bytes) / elapsed
                    network_percent = min(100.0, rate / self.capacity_bytes_per_second * 100)
            self._last_network = (now, network_bytes)

        try:
            load_average = os.getloadavg()[0]
        except (AttributeError, OSError):
            load_average = None

        return ResourceSample(
            subject=SYSTEM,
            timestamp=now,
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=memory.percent,
            memory_bytes=memory.used,
            disk_percent=disk.percent,
            network_percent=network_percent,
            network_bytes=network_bytes,
            pids=len(psutil.pids()),
            load_average=load_average,
        )


def percentile(values: list[float], pct: float) -> float:
    ordered = sorted(values)
    index = max(0, math.ceil(pct / 100 * len(ordered)) - 1)
    return ordered[index]


def _least_squares(xs: list[float], ys: list[float]) -> tuple[float, float, float]:
    """Fit y = a + b*x. Returns (intercept, slope, r_squared)."""
    n = len(xs)
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    var_x = sum((x - mean_x) ** 2 for x in xs)
    if var_x == 0:
        return mean_y, 0.0, 0.0
    slope = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / var_x
    intercept = mean_y - slope * mean_x
    ss_tot = sum((y - mean_y) ** 2 for y in ys)
    if ss_tot == 0:
        return intercept, slope, 1.0
    ss_res = sum((y - (intercept + slope * x)) ** 2 for x, y in zip(xs, ys))
    return intercept, slope, max(0.0, 1 - ss_res / ss_tot)


class ResourceMonitor:
    def __init__(
        self,
        config: PoolConfig,
        pool: PoolManager,
        backend: ContainerBackend,
        bus: EventBus,
        repository: PoolRepository | None = None,
        probe: SystemProbe | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config.monitor
        self.forecast_horizon = config.scaling.forecast_horizon
        self.pool = pool
        self.backend = backend
        self.bus = bus
        self.repository = repository
        self.clock = clock
        self.probe = probe or SystemProbe(self.config.network_capacity_mbps, clock=clock)

        self.windows: dict[MetricKey, deque[tuple[float, float]]] = {}
        self.peaks: dict[MetricKey, float] = {}
        self.latest: dict[str, ResourceSample] = {}

        self.alerts: deque[Alert] = deque(maxlen=self.config.alert_history_size)
        self._active_alerts: dict[MetricKey, Alert] = {}
        self._last_alert_at: dict[tuple[str, str, AlertLevel], float] = {}
        self._last_suggestion_at: dict[tuple[str, str], float] = {}

        self.samples_taken = 0
        self.sample_errors = 0
        self.anomalies = 0
        self.suppressed_alerts = 0
        self.suggestions = 0
        self.last_forecast: dict[str, Any] | None = None

        self.task = PeriodicTask(
            "resource-monitor",
            self.sample_once,
            self.config.sampling_interval,
            clock=clock,
        )

    async def start(self) -> None:
        await self.task.start()
        logger.info(f"Resource monitor started (interval {self.config.sampling_interval}s)")

    async def stop(self) -> None:
        await self.task.stop()
        logger.info("Resource monitor stopped")

    # ========================================================================
    # Sampling
    # ========================================================================

    async def sample_once(self) -> int:
        """Take one round of system, container and pool samples."""
        now = self.clock()
        recorded = 0

        await self.record_sample(self.probe.sample())
        recorded += 1

        for container in self.pool.store.in_state(ContainerState.AVAILABLE, ContainerState.BUSY):
            if not container.runtime_id or self.pool.store.has_operation(container.id):
                continue
            try:
                sample = await self.backend.container_stats(container.runtime_id)
            except BackendError as e:
                self.sample_errors += 1
                logger.warning(f"Stats unavailable for container {container.id}: {e}")
                continue
            if sample is None:
                continue
            sample.subject = container.id
            await self.record_sample(sample)
            recorded += 1

        await self.record_metric(POOL, "utilization", self.pool.utilization * 100, now)

        self.forecast_utilization()
        self._suggest(now)
        return recorded

    async def record_sample(self, sample: ResourceSample) -> None:
        self.samples_taken += 1
        self.latest[sample.subject] = sample
        for metric, value in sample.metrics().items():
            await self.record_metric(sample.subject, metric, value, sample.timestamp)

    async def record_metric(
        self, subject: str, metric: str, value: float, timestamp: float | None = None
    ) -> None:
        """Append one value, running anomaly and threshold checks against it."""
        ts = self.clock() if timestamp is None else timestamp
        key = (subject, metric)
        window = self.windows.get(key)
        if window is None:
            window = deque(maxlen=self.config.window_size)
            self.windows[key] = window

        # Score against history before the value joins it
        await self._check_anomaly(subject, metric, value, window, ts)
        window.append((ts, value))
        if value > self.peaks.get(key, float("-inf")):
            self.peaks[key] = value

        try:
            self._check_threshold(subject, metric, value)
        except ResourceThresholdExceeded as e:
            level = AlertLevel(e.level)
            await self._raise_alert(level, subject, metric, value, e.threshold, str(e), ts)
        else:
            await self._auto_resolve(key, ts)

    def _check_threshold(self, subject: str, metric: str, value: float) -> None:
        thresholds = self.config.thresholds.get(metric)
        if thresholds is None:
            return
        warning, critical = thresholds
        if value >= critical:
            raise ResourceThresholdExceeded(
                subject, metric, value, critical, AlertLevel.CRITICAL.value
            )
        if value >= warning:
            raise ResourceThresholdExceeded(
                subject, metric, value, warning, AlertLevel.WARNING.value
            )

    async def _check_anomaly(
        self,
        subject: str,
        metric: str,
        value: float,
        window: deque[tuple[float, float]],
        ts: float,
    ) -> None:
        if len(window) < self.config.min_anomaly_samples:
            return
        values = [v for _, v in window]
        mean = statistics.fmean(values)
        std = statistics.pstdev(values, mean)
        if std == 0:
            return
        z_score = (value - mean) / std
        if abs(z_score) <= self.config.anomaly_z_threshold:
            return

        self.anomalies += 1
        severity = "high" if abs(z_score) > self.config.anomaly_high_z else "medium"
        logger.warning(
            f"Anomaly on {subject} {metric}: {value:.1f} (mean {mean:.1f}, z={z_score:.2f})"
        )
        self.bus.publish(
            EventType.ANOMALY_DETECTED,
            {
                "subject": subject,
                "metric": metric,
                "value": value,
                "mean": round(mean, 3),
                "std": round(std, 3),
                "z_score": round(z_score, 3),
                "severity": severity,
                "timestamp": ts,
            },
            source="resource_monitor",
        )
        await self._raise_alert(
            AlertLevel.WARNING,
            subject,
            f"{metric}_anomaly",
            value,
            None,
            f"{subject} {metric}={value:.1f} deviates {z_score:+.2f} std from mean {mean:.1f}",
            ts,
        )

    # ========================================================================
    # Alerts
    # ========================================================================

    async def _raise_alert(
        self,
        level: AlertLevel,
        subject: str,
        metric: str,
        value: float | None,
        threshold: float | None,
        message: str,
        ts: float,
    ) -> Alert | None:
        cooldown_key = (subject, metric, level)
        last = self._last_alert_at.get(cooldown_key)
        if last is not None and ts - last < self.config.alert_cooldown:
            self.suppressed_alerts += 1
            return None
        self._last_alert_at[cooldown_key] = ts

        alert = Alert(
            id=uuid.uuid4().hex,
            level=level,
            subject=subject,
            metric=metric,
            value=value,
            threshold=threshold,
            message=message,
            timestamp=ts,
        )
        self.alerts.append(alert)
        if threshold is not None:
            # A level change supersedes the alert already open for this metric
            replaced = self._active_alerts.get((subject, metric))
            self._active_alerts[(subject, metric)] = alert
            if replaced is not None and not replaced.resolved:
                replaced.resolved = True
                replaced.resolved_at = ts
                await self._persist_resolution(replaced)

        if level == AlertLevel.CRITICAL:
            logger.error(f"Critical alert: {message}")
        else:
            logger.warning(f"Alert: {message}")

        await self._persist(alert)
        self.bus.publish(EventType.RESOURCE_ALERT, {"alert": alert}, source="resource_monitor")
        return alert

    async def _auto_resolve(self, key: MetricKey, ts: float) -> None:
        alert = self._active_alerts.pop(key, None)
        if alert is None or alert.resolved:
            return
        alert.resolved = True
        alert.resolved_at = ts
        logger.info(f"Alert {alert.id} resolved: {key[0]} {key[1]} back below warning")
        await self._persist_resolution(alert)

    async def record_external_alert(self, alert: Alert) -> None:
        """Keep alerts raised by other components in the same history."""
        self.alerts.append(alert)
        await self._persist(alert)

    async def resolve_alert(self, alert_id: str) -> bool:
        """Resolve an alert by id. Returns False if unknown or already resolved."""
        now = self.clock()
        for alert in self.alerts:
            if alert.id == alert_id:
                if alert.resolved:
                    return False
                alert.resolved = True
                alert.resolved_at = now
                key = (alert.subject, alert.metric)
                if self._active_alerts.get(key) is alert:
                    del self._active_alerts[key]
                await self._persist_resolution(alert)
                return True

        if self.repository is not None:
            return await self.repository.resolve_alert(alert_id, now)
        return False

    def get_alerts(
        self,
        level: AlertLevel | None = None,
        limit: int = 100,
        unresolved_only: bool = False,
    ) -> list[Alert]:
        alerts = [
            a
            for a in self.alerts
            if (level is None or a.level == level) and not (unresolved_only and a.resolved)
        ]
        return alerts[-limit:]

    async def _persist(self, alert: Alert) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.save_alert(alert)
        except Exception as e:
            logger.error(f"Failed to persist alert {alert.id}: {e}", exc_info=True)

    async def _persist_resolution(self, alert: Alert) -> None:
        if self.repository is None or alert.resolved_at is None:
            return
        try:
            await self.repository.resolve_alert(alert.id, alert.resolved_at)
        except Exception as e:
            logger.error(f"Failed to persist resolution of {alert.id}: {e}", exc_info=True)

    # ========================================================================
    # Aggregation and trends
    # ========================================================================

    def aggregate(self, subject: str, metric: str, window_seconds: float) -> dict[str, Any]:
        now = self.clock()
        values = [v for t, v in self.windows.get((subject, metric), ()) if t >= now - window_seconds]
        if not values:
            return {"count": 0}
        return {
            "count": len(values),
            "avg": round(statistics.fmean(values), 3),
            "min": min(values),
            "max": max(values),
            "p95": percentile(values, 95),
        }

    def get_aggregates(self, subject: str = SYSTEM) -> dict[str, dict[str, Any]]:
        metrics = sorted(m for s, m in self.windows if s == subject)
        return {
            metric: {
                label: self.aggregate(subject, metric, seconds)
                for label, seconds in AGGREGATION_WINDOWS.items()
            }
            for metric in metrics
        }

    def analyze_trend(self, subject: str, metric: str) -> dict[str, Any] | None:
        """
        Fit the rolling window and describe its trend.

        Uses linear least squares, and an exponential fit (least squares on
        log values) when every value is positive; the better fit wins.

        Returns:
            Trend description, or None with fewer than ``trend_points`` samples
        """
        points = list(self.windows.get((subject, metric), ()))
        if len(points) < self.config.trend_points:
            return None

        t0 = points[0][0]
        xs = [(t - t0) / 60.0 for t, _ in points]  # minutes
        ys = [v for _, v in points]

        intercept, slope, r_squared = _least_squares(xs, ys)
        trend = {
            "model": "linear",
            "intercept": intercept,
            "slope": slope,
            "r_squared": r_squared,
        }
        if all(y > 0 for y in ys):
            log_intercept, rate, log_r2 = _least_squares(xs, [math.log(y) for y in ys])
            if log_r2 > r_squared:
                trend = {
                    "model": "exponential",
                    "intercept": log_intercept,
                    "slope": rate,
                    "r_squared": log_r2,
                }

        # Express the slope in units per minute at the latest point
        if trend["model"] == "exponential":
            per_minute = ys[-1] * trend["slope"]
        else:
            per_minute = trend["slope"]
        if per_minute > self.config.trend_slope_threshold:
            direction = "increasing"
        elif per_minute < -self.config.trend_slope_threshold:
            direction = "decreasing"
        else:
            direction = "stable"

        trend.update(
            {
                "subject": subject,
                "metric": metric,
                "per_minute": round(per_minute, 4),
                "direction": direction,
                "origin": t0,
                "samples": len(points),
            }
        )
        return trend

    def extrapolate(self, subject: str, metric: str, horizon_seconds: float) -> float | None:
        trend = self.analyze_trend(subject, metric)
        if trend is None:
            return None
        x = (self.clock() + horizon_seconds - trend["origin"]) / 60.0
        if trend["model"] == "exponential":
            exponent = min(trend["intercept"] + trend["slope"] * x, 50.0)
            return math.exp(exponent)
        return trend["intercept"] + trend["slope"] * x

    def forecast_utilization(self, horizon_seconds: float | None = None) -> float | None:
        """
        Extrapolate pool utilization and publish it for the scaler.

        Returns:
            Forecast utilization as a fraction, or None without enough data
        """
        horizon = self.forecast_horizon if horizon_seconds is None else horizon_seconds
        value = self.extrapolate(POOL, "utilization", horizon)
        if value is None:
            return None
        utilization = min(1.0, max(0.0, value / 100))
        self.last_forecast = {
            "utilization": round(utilization, 4),
            "horizon": horizon,
            "timestamp": self.clock(),
        }
        self.bus.publish(
            EventType.UTILIZATION_FORECAST, dict(self.last_forecast), source="resource_monitor"
        )
        return utilization

    # ========================================================================
    # Suggestions
    # ========================================================================

    def _recent(self, subject: str, metric: str) -> list[float]:
        window = self.windows.get((subject, metric), ())
        return [v for _, v in list(window)[-self.config.suggestion_min_samples :]]

    def _suggest(self, now: float) -> None:
        cfg = self.config
        for subject in list(self.latest):
            if subject in (SYSTEM, POOL):
                continue
            cpu = self._recent(subject, "cpu")
            memory = self._recent(subject, "memory")
            if len(cpu) < cfg.suggestion_min_samples:
                continue

            avg_cpu = statistics.fmean(cpu)
            if min(cpu) >= cfg.recycle_cpu_percent:
                self._publish_suggestion(
                    subject,
                    "saturated",
                    "recycle_container",
                    f"Container {subject} pinned at {avg_cpu:.0f}% CPU",
                    avg_cpu,
                    now,
                )
            elif (
                avg_cpu < cfg.over_provisioned_percent
                and memory
                and statistics.fmean(memory) < cfg.over_provisioned_percent
            ):
                self._publish_suggestion(
                    subject,
                    "over_provisioned",
                    "reduce_quota",
                    f"Container {subject} consistently over-provisioned "
                    f"({avg_cpu:.0f}% CPU, {statistics.fmean(memory):.0f}% memory)",
                    avg_cpu,
                    now,
                )

        utilization = self._recent(POOL, "utilization")
        if len(utilization) >= cfg.suggestion_min_samples:
            avg = statistics.fmean(utilization)
            if avg < cfg.low_pool_utilization:
                self._publish_suggestion(
                    POOL,
                    "under_utilized",
                    "reduce_min_size",
                    f"Pool utilization averaging {avg:.0f}%",
                    avg,
                    now,
                )
            elif avg > cfg.high_pool_utilization:
                self._publish_suggestion(
                    POOL,
                    "over_utilized",
                    "increase_max_size",
                    f"Pool utilization averaging {avg:.0f}%",
                    avg,
                    now,
                )

    def _publish_suggestion(
        self, subject: str, kind: str, action: str, message: str, value: float, now: float
    ) -> None:
        key = (subject, kind)
        last = self._last_suggestion_at.get(key)
        if last is not None and now - last < self.config.alert_cooldown:
            return
        self._last_suggestion_at[key] = now
        self.suggestions += 1
        logger.info(f"Suggestion: {message}")
        payload = {
            "subject": subject,
            "kind": kind,
            "action": action,
            "message": message,
            "value": round(value, 2),
            "timestamp": now,
        }
        if subject not in (SYSTEM, POOL):
            payload["container_id"] = subject
        self.bus.publish(EventType.OPTIMIZATION_SUGGESTION, payload, source="resource_monitor")

    # ========================================================================
    # Queries
    # ========================================================================

    def latest_usage(self, container_id: str) -> dict[str, float]:
        """Latest cpu/memory/disk/network percent for a container, {} if unsampled."""
        sample = self.latest.get(container_id)
        return sample.metrics() if sample else {}

    def forget_subject(self, subject: str) -> None:
        """Drop windows and peaks for a container that left the pool."""
        self.latest.pop(subject, None)
        for key in [k for k in self.windows if k[0] == subject]:
            del self.windows[key]
            self.peaks.pop(key, None)
            self._active_alerts.pop(key, None)
        for key in [k for k in self._last_suggestion_at if k[0] == subject]:
            del self._last_suggestion_at[key]

    def get_stats(self) -> dict[str, Any]:
        system = self.latest.get(SYSTEM)
        return {
            "samples_taken": self.samples_taken,
            "sample_errors": self.sample_errors,
            "tracked_series": len(self.windows),
            "anomalies": self.anomalies,
            "alerts": len(self.alerts),
            "active_alerts": sum(1 for a in self._active_alerts.values() if not a.resolved),
            "suppressed_alerts": self.suppressed_alerts,
            "suggestions": self.suggestions,
            "system": system.to_dict() if system else None,
            "peaks": {f"{s}.{m}": v for (s, m), v in self.peaks.items() if s in (SYSTEM, POOL)},
            "last_forecast": self.last_forecast,
        }
