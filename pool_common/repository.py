"""
Abstract repository interface for pool persistence.

This module defines the contract that any database implementation must follow
to keep what the pool needs across restarts: job patterns, scaling history
and alerts.
"""

from abc import ABC, abstractmethod

from .models import Alert, AlertLevel, JobPattern, ScalingEvent


class PoolRepository(ABC):
    """
    Abstract base class for pool storage operations.

    Implementations must provide async-safe access and handle their own
    connection management.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create the storage schema if it does not exist."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release storage connections."""
        pass

    @abstractmethod
    async def save_pattern(self, pattern: JobPattern) -> None:
        """
        Insert or replace a job pattern.

        Args:
            pattern: Pattern keyed by its signature
        """
        pass

    @abstractmethod
    async def load_patterns(self, limit: int | None = None) -> list[JobPattern]:
        """
        Load stored patterns, most recently seen first.

        Args:
            limit: Optional maximum number of patterns to return

        Returns:
            List of patterns
        """
        pass

    @abstractmethod
    async def delete_pattern(self, signature: str) -> bool:
        """
        Delete a pattern.

        Returns:
            True if a pattern was deleted, False if it did not exist
        """
        pass

    @abstractmethod
    async def add_scaling_event(self, event: ScalingEvent) -> int:
        """
        Append a scaling event to the history.

        Returns:
            The id assigned to the stored event
        """
        pass

    @abstractmethod
    async def list_scaling_events(self, limit: int = 50) -> list[ScalingEvent]:
        """
        List scaling events, newest first.

        Args:
            limit: Maximum number of events to return
        """
        pass

    @abstractmethod
    async def trim_scaling_events(self, keep: int) -> int:
        """
        Delete all but the newest ``keep`` scaling events.

        Returns:
            Number of events deleted
        """
        pass

    @abstractmethod
    async def save_alert(self, alert: Alert) -> None:
        """Insert or replace an alert keyed by its id."""
        pass

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Alert | None:
        """
        Retrieve an alert by id.

        Returns:
            Alert if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_alerts(
        self,
        level: AlertLevel | None = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> list[Alert]:
        """
        List alerts, newest first.

        Args:
            level: Only return alerts of this level
            unresolved_only: Skip resolved alerts
            limit: Maximum number of alerts to return
        """
        pass

    @abstractmethod
    async def resolve_alert(self, alert_id: str, resolved_at: float) -> bool:
        """
        Mark an alert resolved.

        Returns:
            True if an unresolved alert was updated, False otherwise
        """
        pass
