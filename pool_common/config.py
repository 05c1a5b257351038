"""
Static configuration for the container pool.

A PoolConfig is built once at startup (from defaults, environment variables
and command-line flags), validated at that boundary, and handed to every
component. Components read options; they never re-derive or re-validate them.
"""

import re
from dataclasses import dataclass, field

from .errors import QuotaExceededError

_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_memory_limit(value: str) -> int:
    """
    Parse a memory quota string into bytes.

    Args:
        value: Quota such as "512m", "2g", "1024k" or a plain byte count

    Returns:
        Number of bytes

    Raises:
        QuotaExceededError: If the value is unparsable or not positive
    """
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([bkmg]?)\s*", str(value).lower())
    if not match:
        raise QuotaExceededError(f"Invalid memory limit: {value!r}")
    amount = float(match.group(1)) * _MEMORY_UNITS[match.group(2)]
    if amount <= 0:
        raise QuotaExceededError(f"Memory limit must be positive: {value!r}")
    return int(amount)


def parse_cpu_limit(value: str) -> int:
    """
    Parse a CPU quota (fractional cores) into nano-CPUs.

    Raises:
        QuotaExceededError: If the value is unparsable or not positive
    """
    try:
        cores = float(value)
    except (TypeError, ValueError) as e:
        raise QuotaExceededError(f"Invalid CPU limit: {value!r}") from e
    if cores <= 0:
        raise QuotaExceededError(f"CPU limit must be positive: {value!r}")
    return int(cores * 1e9)


@dataclass
class PoolSizeConfig:
    min_size: int = 3
    target_size: int = 8
    max_size: int = 20


@dataclass
class TemplateConfig:
    """The container template every pooled container is created from."""

    name: str = "default-runner"
    base_image: str = "ubuntu:22.04"
    working_dir: str = "/workspace"
    network_mode: str = "bridge"
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    keep_alive_command: str = "tail -f /dev/null"
    cleanup_command: str = "rm -rf /workspace/* /tmp/* 2>/dev/null; true"
    tmpfs_size: str = "100m"


@dataclass
class QuotaConfig:
    cpus: str = "1.0"
    memory: str = "2g"
    disk: str | None = None
    pids: int = 512


@dataclass
class ScalingConfig:
    up_threshold: float = 0.80
    emergency_threshold: float = 0.95
    down_threshold: float = 0.30
    up_increment: int = 2
    emergency_increment: int = 4
    down_increment: int = 1
    up_cooldown: float = 30.0
    emergency_cooldown: float = 10.0
    down_cooldown: float = 180.0
    idle_grace_period: float = 120.0
    evaluation_interval: float = 30.0
    smoothing_alpha: float = 0.3
    trend_beta: float = 0.2
    forecast_horizon: float = 600.0
    seasonal_buckets: int = 24
    seasonal_weight: float = 0.3
    min_data_points: int = 10
    history_size: int = 500
    predictive_enabled: bool = True
    external_forecast_ttl: float = 120.0


@dataclass
class ReuseConfig:
    similarity_threshold: float = 0.80
    efficiency_threshold: float = 0.85
    efficiency_min_executions: int = 5
    performance_weight: float = 0.4
    history_weight: float = 0.3
    fit_weight: float = 0.3
    repository_weight: float = 0.35
    workflow_weight: float = 0.25
    labels_weight: float = 0.25
    dependency_weight: float = 0.15
    max_patterns: int = 1000
    max_reuse_count: int = 100
    max_container_age: float = 3600.0
    slow_execution_threshold: float = 300.0
    pruning_interval: float = 300.0


@dataclass
class MonitorConfig:
    sampling_interval: float = 15.0
    window_size: int = 120
    anomaly_z_threshold: float = 2.5
    anomaly_high_z: float = 3.0
    min_anomaly_samples: int = 20
    alert_cooldown: float = 300.0
    alert_history_size: int = 500
    thresholds: dict[str, tuple[float, float]] = field(
        default_factory=lambda: {
            "cpu": (80.0, 95.0),
            "memory": (85.0, 95.0),
            "disk": (80.0, 90.0),
            "network": (80.0, 95.0),
            "utilization": (80.0, 95.0),
        }
    )
    network_capacity_mbps: float = 1000.0
    trend_points: int = 5
    trend_slope_threshold: float = 0.5
    over_provisioned_percent: float = 10.0
    recycle_cpu_percent: float = 95.0
    low_pool_utilization: float = 30.0
    high_pool_utilization: float = 85.0
    suggestion_min_samples: int = 10
    emergency_alert_metrics: tuple[str, ...] = ("utilization",)


@dataclass
class StateConfig:
    reconcile_interval: float = 30.0
    transition_timeout: float = 60.0
    max_recovery_attempts: int = 3
    backoff_base: float = 1.0
    history_size: int = 1000


@dataclass
class OrchestratorConfig:
    health_check_interval: float = 60.0
    heartbeat_timeout: float = 180.0
    max_component_restarts: int = 3
    # Restart count is forgiven after this long without a stall
    restart_reset_after: float = 3600.0
    drain_timeout: float = 30.0


@dataclass
class BackendConfig:
    operation_timeout: float = 60.0
    container_prefix: str = "ci-pool-"
    pool_label: str = "ci-pool.managed=true"


@dataclass
class PoolConfig:
    """All pool options, grouped by the component that consumes them."""

    size: PoolSizeConfig = field(default_factory=PoolSizeConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    reuse: ReuseConfig = field(default_factory=ReuseConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    state: StateConfig = field(default_factory=StateConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)

    def validate(self) -> "PoolConfig":
        """
        Check option consistency once, at the configuration boundary.

        Returns:
            self, so construction and validation can be chained

        Raises:
            ValueError: Naming the first offending option
        """
        size = self.size
        if size.min_size < 0:
            raise ValueError(f"size.min_size must be >= 0, got {size.min_size}")
        if size.max_size < 1:
            raise ValueError(f"size.max_size must be >= 1, got {size.max_size}")
        if not size.min_size <= size.target_size <= size.max_size:
            raise ValueError(
                "size.target_size must satisfy min_size <= target_size <= max_size "
                f"(got {size.min_size}/{size.target_size}/{size.max_size})"
            )

        scaling = self.scaling
        if not 0 < scaling.down_threshold < scaling.up_threshold <= scaling.emergency_threshold <= 1:
            raise ValueError(
                "scaling thresholds must satisfy 0 < down < up <= emergency <= 1"
            )
        for name in ("up_increment", "emergency_increment", "down_increment"):
            if getattr(scaling, name) < 1:
                raise ValueError(f"scaling.{name} must be >= 1")
        for name in (
            "up_cooldown",
            "emergency_cooldown",
            "down_cooldown",
            "idle_grace_period",
        ):
            if getattr(scaling, name) < 0:
                raise ValueError(f"scaling.{name} must be >= 0")
        if scaling.evaluation_interval <= 0:
            raise ValueError("scaling.evaluation_interval must be > 0")
        if not 0 < scaling.smoothing_alpha <= 1 or not 0 <= scaling.trend_beta <= 1:
            raise ValueError("scaling smoothing factors must be within (0, 1]")
        if not 1 <= scaling.seasonal_buckets <= 24:
            raise ValueError("scaling.seasonal_buckets must be between 1 and 24")

        reuse = self.reuse
        if not 0 <= reuse.similarity_threshold <= 1:
            raise ValueError("reuse.similarity_threshold must be within [0, 1]")
        if not 0 <= reuse.efficiency_threshold <= 1:
            raise ValueError("reuse.efficiency_threshold must be within [0, 1]")
        weights = reuse.performance_weight + reuse.history_weight + reuse.fit_weight
        if abs(weights - 1.0) > 1e-6:
            raise ValueError(f"reuse scoring weights must sum to 1.0, got {weights}")
        if reuse.max_patterns < 1:
            raise ValueError("reuse.max_patterns must be >= 1")

        monitor = self.monitor
        if monitor.sampling_interval <= 0:
            raise ValueError("monitor.sampling_interval must be > 0")
        if monitor.window_size < 2:
            raise ValueError("monitor.window_size must be >= 2")
        for metric, (warning, critical) in monitor.thresholds.items():
            if warning > critical:
                raise ValueError(
                    f"monitor.thresholds[{metric!r}]: warning {warning} > critical {critical}"
                )

        if self.state.max_recovery_attempts < 1:
            raise ValueError("state.max_recovery_attempts must be >= 1")
        if self.state.reconcile_interval <= 0:
            raise ValueError("state.reconcile_interval must be > 0")
        if self.orchestrator.max_component_restarts < 0:
            raise ValueError("orchestrator.max_component_restarts must be >= 0")
        if self.orchestrator.restart_reset_after <= 0:
            raise ValueError("orchestrator.restart_reset_after must be positive")
        if self.backend.operation_timeout <= 0:
            raise ValueError("backend.operation_timeout must be > 0")
        if not self.template.base_image:
            raise ValueError("template.base_image must not be empty")
        return self
