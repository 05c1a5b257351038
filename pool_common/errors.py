"""
Error taxonomy for the container pool.

Caller-facing errors at assignment time are limited to PoolExhaustedError and
QuotaExceededError. Everything else is handled inside the pool and only
observable through the event stream.
"""


class PoolError(Exception):
    """Base class for all container pool errors."""


class BackendError(PoolError):
    """A container backend command failed."""


class BackendTimeoutError(BackendError):
    """A container backend command exceeded its operation timeout."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Backend operation '{operation}' timed out after {timeout}s")


class ContainerCreationError(PoolError):
    """The backend refused to create or start a container, or timed out."""


class QuotaExceededError(PoolError):
    """Resource limits are misconfigured or were rejected by the backend."""


class StateTransitionError(PoolError):
    """An invalid lifecycle transition was requested. State is unchanged."""

    def __init__(self, container_id: str, current: str, requested: str):
        self.container_id = container_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid transition for container {container_id}: {current} -> {requested}"
        )


class PoolExhaustedError(PoolError):
    """No container is available and the pool is at max size. Retryable."""


class AssignmentCancelledError(PoolError):
    """A pending assignment was withdrawn before the container became busy."""


class ScalingConflictError(PoolError):
    """A scaling operation was requested while another one is in flight."""


class HealthCheckFailure(PoolError):
    """A container failed its post-job health probe."""

    def __init__(self, container_id: str, reason: str):
        self.container_id = container_id
        self.reason = reason
        super().__init__(f"Container {container_id} failed health check: {reason}")


class ResourceThresholdExceeded(PoolError):
    """A sampled metric breached a warning or critical threshold."""

    def __init__(
        self, subject: str, metric: str, value: float, threshold: float, level: str
    ):
        self.subject = subject
        self.metric = metric
        self.value = value
        self.threshold = threshold
        self.level = level
        super().__init__(
            f"{subject} {metric}={value:.1f} exceeded {level} threshold {threshold:.1f}"
        )


class UnknownContainerError(PoolError):
    """The container id is not tracked by the pool."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"Unknown container: {container_id}")
