"""
Data models for container pool management.

These models represent the domain objects shared by every pool component,
independent of the container backend and the storage mechanism. Timestamps
are float seconds as returned by the pool clock (``time.time`` by default).
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def format_timestamp(ts: float | None) -> str | None:
    """Render a clock timestamp as an ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat().replace("+00:00", "Z")


class ContainerState(str, Enum):
    """Lifecycle states of a pooled container."""

    INITIALIZING = "initializing"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    AVAILABLE = "available"
    BUSY = "busy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    RECYCLING = "recycling"
    FAILED = "failed"
    ORPHANED = "orphaned"


class ScalingDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    EMERGENCY = "emergency"


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ResourceHints:
    """Resources a job expects to use (cores, megabytes)."""

    cpu: float | None = None
    memory_mb: float | None = None
    disk_mb: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"cpu": self.cpu, "memory_mb": self.memory_mb, "disk_mb": self.disk_mb}


@dataclass(frozen=True)
class JobDescriptor:
    """
    A job request handed to the pool by the external job queue.

    Validated at construction so components never re-check fields at the
    point of use. Labels are normalized to a sorted, de-duplicated tuple.
    """

    job_id: str
    repository: str
    workflow: str
    labels: tuple[str, ...] = ()
    resource_hints: ResourceHints = field(default_factory=ResourceHints)
    dependency_fingerprint: str | None = None

    def __post_init__(self) -> None:
        for name in ("job_id", "repository", "workflow"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"JobDescriptor.{name} must be a non-empty string")
        labels = self.labels
        if isinstance(labels, str):
            labels = (labels,)
        if not isinstance(labels, (list, tuple, set, frozenset)):
            raise ValueError(f"JobDescriptor.labels must be a list of strings, got {labels!r}")
        for label in labels:
            if not isinstance(label, str) or not label.strip():
                raise ValueError(f"Job labels must be non-empty strings, got {label!r}")
        object.__setattr__(self, "labels", tuple(sorted(set(labels))))
        for name in ("cpu", "memory_mb", "disk_mb"):
            value = getattr(self.resource_hints, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Resource hint {name} must be a number, got {value!r}")
            if value <= 0:
                raise ValueError(f"Resource hint {name} must be positive, got {value}")

    @property
    def signature(self) -> str:
        """Stable hash over repository, workflow, labels and dependency fingerprint."""
        payload = json.dumps(
            [
                self.repository,
                self.workflow,
                list(self.labels),
                self.dependency_fingerprint,
            ],
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobDescriptor":
        """Build a descriptor from a queue payload, raising ValueError if malformed."""
        try:
            hints = data.get("resource_hints") or {}
            if not isinstance(hints, dict):
                raise ValueError(f"resource_hints must be a mapping, got {hints!r}")
            return cls(
                job_id=str(data["job_id"]),
                repository=data["repository"],
                workflow=data["workflow"],
                labels=data.get("labels") or (),
                resource_hints=ResourceHints(
                    cpu=hints.get("cpu"),
                    memory_mb=hints.get("memory_mb"),
                    disk_mb=hints.get("disk_mb"),
                ),
                dependency_fingerprint=data.get("dependency_fingerprint"),
            )
        except KeyError as e:
            raise ValueError(f"JobDescriptor missing required field: {e.args[0]}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "repository": self.repository,
            "workflow": self.workflow,
            "labels": list(self.labels),
            "resource_hints": self.resource_hints.to_dict(),
            "dependency_fingerprint": self.dependency_fingerprint,
            "signature": self.signature,
        }


@dataclass
class JobOutcome:
    """Result reported when a container is returned to the pool."""

    success: bool = True
    duration_seconds: float | None = None


@dataclass
class Container:
    """
    A managed execution unit.

    Owned exclusively by the Pool Manager. The State Manager only writes
    ``state`` and ``state_changed_at`` through validated transitions.
    """

    id: str
    template: str
    runtime_id: str | None = None  # Backend handle, set once created
    state: ContainerState = ContainerState.INITIALIZING
    created_at: float = 0.0
    state_changed_at: float = 0.0
    last_used_at: float | None = None
    last_idle_at: float | None = None  # When it last became available
    execution_count: int = 0
    failure_count: int = 0
    busy_seconds: float = 0.0
    efficiency_score: float = 1.0
    job_id: str | None = None
    assigned_at: float | None = None
    baseline_usage: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runtime_id": self.runtime_id,
            "template": self.template,
            "state": self.state.value,
            "created_at": format_timestamp(self.created_at),
            "last_used_at": format_timestamp(self.last_used_at),
            "execution_count": self.execution_count,
            "failure_count": self.failure_count,
            "busy_seconds": round(self.busy_seconds, 3),
            "efficiency_score": round(self.efficiency_score, 4),
            "job_id": self.job_id,
        }


@dataclass
class JobPattern:
    """
    Reuse history for one job signature.

    ``container_stats`` maps container id to ``{"jobs", "successes",
    "avg_duration"}`` for the jobs of this signature that container ran.
    """

    signature: str
    repository: str
    workflow: str
    labels: tuple[str, ...] = ()
    dependency_fingerprint: str | None = None
    total_jobs: int = 0
    successes: int = 0
    avg_duration: float = 0.0
    resource_profile: dict[str, float] = field(default_factory=dict)
    container_stats: dict[str, dict[str, float]] = field(default_factory=dict)
    container_ids: list[str] = field(default_factory=list)
    created_at: float = 0.0
    last_seen: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_jobs == 0:
            return 0.0
        return self.successes / self.total_jobs

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "repository": self.repository,
            "workflow": self.workflow,
            "labels": list(self.labels),
            "dependency_fingerprint": self.dependency_fingerprint,
            "total_jobs": self.total_jobs,
            "success_rate": round(self.success_rate, 4),
            "avg_duration": round(self.avg_duration, 3),
            "resource_profile": dict(self.resource_profile),
            "container_ids": list(self.container_ids),
            "last_seen": format_timestamp(self.last_seen),
        }


@dataclass
class ScalingEvent:
    """Record of one scale action. ``delta`` is signed (+created / -removed)."""

    direction: ScalingDirection
    delta: int
    reason: str
    timestamp: float
    requested: int = 0
    pool_size_before: int = 0
    pool_size_after: int = 0
    utilization: float | None = None
    id: int | None = None  # Assigned by the repository

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "delta": self.delta,
            "requested": self.requested,
            "reason": self.reason,
            "timestamp": format_timestamp(self.timestamp),
            "pool_size_before": self.pool_size_before,
            "pool_size_after": self.pool_size_after,
            "utilization": self.utilization,
        }


@dataclass
class ResourceSample:
    """
    Metric snapshot for one container or for the host ("system").

    Percentages are 0-100. Fields the source cannot provide stay None.
    """

    subject: str
    timestamp: float
    cpu_percent: float | None = None
    memory_percent: float | None = None
    memory_bytes: int | None = None
    disk_percent: float | None = None
    network_percent: float | None = None
    network_bytes: int | None = None
    pids: int | None = None
    load_average: float | None = None

    def metrics(self) -> dict[str, float]:
        """Alertable metrics present in this sample, keyed by metric name."""
        values = {
            "cpu": self.cpu_percent,
            "memory": self.memory_percent,
            "disk": self.disk_percent,
            "network": self.network_percent,
        }
        return {name: value for name, value in values.items() if value is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "timestamp": format_timestamp(self.timestamp),
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "memory_bytes": self.memory_bytes,
            "disk_percent": self.disk_percent,
            "network_percent": self.network_percent,
            "network_bytes": self.network_bytes,
            "pids": self.pids,
            "load_average": self.load_average,
        }


@dataclass
class Alert:
    """A threshold, anomaly or failure alert about a container or the system."""

    id: str
    level: AlertLevel
    subject: str  # Container id or "system"
    metric: str
    value: float | None
    threshold: float | None
    message: str
    timestamp: float
    source: str = "resource_monitor"
    resolved: bool = False
    resolved_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level.value,
            "subject": self.subject,
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
            "source": self.source,
            "resolved": self.resolved,
            "resolved_at": format_timestamp(self.resolved_at),
        }
