"""
SQLite implementation of the pool repository.

Uses aiosqlite for async operations. Can be replaced with a PostgreSQL/MySQL
implementation of PoolRepository without touching the pool components.
"""

import json
from datetime import UTC, datetime

import aiosqlite

from pool_common.models import (
    Alert,
    AlertLevel,
    JobPattern,
    ScalingDirection,
    ScalingEvent,
)
from pool_common.repository import PoolRepository


def _to_iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat()


def _from_iso(value: str | None) -> float | None:
    if value is None:
        return None
    return datetime.fromisoformat(value).timestamp()


class SQLitePoolRepository(PoolRepository):
    """
    SQLite-based pool storage implementation.

    Uses a single database file with three tables:
    - job_patterns: Reuse history keyed by job signature
    - scaling_events: Append-only scaling history
    - alerts: Threshold, anomaly and failure alerts with resolution state
    """

    def __init__(self, db_path: str = "ci_pool.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - job_patterns table: one row per signature, JSON columns for
          labels, resource profile and per-container statistics
        - scaling_events table: autoincrement id, newest rows last
        - alerts table: alert id, level, subject, metric and resolution
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS job_patterns (
                signature TEXT PRIMARY KEY,
                repository TEXT NOT NULL,
                workflow TEXT NOT NULL,
                labels TEXT NOT NULL,
                dependency_fingerprint TEXT,
                total_jobs INTEGER NOT NULL DEFAULT 0,
                successes INTEGER NOT NULL DEFAULT 0,
                avg_duration REAL NOT NULL DEFAULT 0,
                resource_profile TEXT NOT NULL,
                container_stats TEXT NOT NULL,
                container_ids TEXT NOT NULL,
                created_at TEXT NOT NULL,
                last_seen TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS scaling_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                direction TEXT NOT NULL,
                delta INTEGER NOT NULL,
                requested INTEGER NOT NULL,
                reason TEXT NOT NULL,
                pool_size_before INTEGER NOT NULL,
                pool_size_after INTEGER NOT NULL,
                utilization REAL,
                timestamp TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS alerts (
                id TEXT PRIMARY KEY,
                level TEXT NOT NULL,
                subject TEXT NOT NULL,
                metric TEXT NOT NULL,
                value REAL,
                threshold REAL,
                message TEXT NOT NULL,
                source TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at TEXT
            )
        """)

        # Create index on level for filtered alert listings
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_alerts_level
            ON alerts(level)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ========================================================================
    # Job patterns
    # ========================================================================

    async def save_pattern(self, pattern: JobPattern) -> None:
        """
        Insert or replace a job pattern.

        Args:
            pattern: Pattern keyed by its signature
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT OR REPLACE INTO job_patterns (
                signature, repository, workflow, labels, dependency_fingerprint,
                total_jobs, successes, avg_duration, resource_profile,
                container_stats, container_ids, created_at, last_seen
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pattern.signature,
                pattern.repository,
                pattern.workflow,
                json.dumps(list(pattern.labels)),
                pattern.dependency_fingerprint,
                pattern.total_jobs,
                pattern.successes,
                pattern.avg_duration,
                json.dumps(pattern.resource_profile),
                json.dumps(pattern.container_stats),
                json.dumps(pattern.container_ids),
                _to_iso(pattern.created_at),
                _to_iso(pattern.last_seen),
            ),
        )
        await conn.commit()

    async def load_patterns(self, limit: int | None = None) -> list[JobPattern]:
        """
        Load stored patterns, most recently seen first.

        Args:
            limit: Optional maximum number of patterns to return

        Returns:
            List of patterns
        """
        conn = await self._get_connection()

        sql = """
            SELECT signature, repository, workflow, labels, dependency_fingerprint,
                   total_jobs, successes, avg_duration, resource_profile,
                   container_stats, container_ids, created_at, last_seen
            FROM job_patterns
            ORDER BY last_seen DESC
        """
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()

        patterns = []
        for row in rows:
            (
                signature,
                repository,
                workflow,
                labels,
                dependency_fingerprint,
                total_jobs,
                successes,
                avg_duration,
                resource_profile,
                container_stats,
                container_ids,
                created_at,
                last_seen,
            ) = row
            patterns.append(
                JobPattern(
                    signature=signature,
                    repository=repository,
                    workflow=workflow,
                    labels=tuple(json.loads(labels)),
                    dependency_fingerprint=dependency_fingerprint,
                    total_jobs=total_jobs,
                    successes=successes,
                    avg_duration=avg_duration,
                    resource_profile=json.loads(resource_profile),
                    container_stats=json.loads(container_stats),
                    container_ids=json.loads(container_ids),
                    created_at=_from_iso(created_at) or 0.0,
                    last_seen=_from_iso(last_seen) or 0.0,
                )
            )

        return patterns

    async def delete_pattern(self, signature: str) -> bool:
        """
        Delete a pattern.

        Args:
            signature: Pattern signature

        Returns:
            True if a pattern was deleted, False if it did not exist
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            "DELETE FROM job_patterns WHERE signature = ?", (signature,)
        )
        await conn.commit()
        return cursor.rowcount > 0

    # ========================================================================
    # Scaling events
    # ========================================================================

    async def add_scaling_event(self, event: ScalingEvent) -> int:
        """
        Append a scaling event to the history.

        Args:
            event: Event to store

        Returns:
            The id assigned to the stored event
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            INSERT INTO scaling_events (
                direction, delta, requested, reason, pool_size_before,
                pool_size_after, utilization, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.direction.value,
                event.delta,
                event.requested,
                event.reason,
                event.pool_size_before,
                event.pool_size_after,
                event.utilization,
                _to_iso(event.timestamp),
            ),
        )
        await conn.commit()

        event_id = cursor.lastrowid
        assert event_id is not None
        return event_id

    async def list_scaling_events(self, limit: int = 50) -> list[ScalingEvent]:
        """
        List scaling events, newest first.

        Args:
            limit: Maximum number of events to return
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, direction, delta, requested, reason, pool_size_before,
                   pool_size_after, utilization, timestamp
            FROM scaling_events
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()

        return [
            ScalingEvent(
                id=row[0],
                direction=ScalingDirection(row[1]),
                delta=row[2],
                requested=row[3],
                reason=row[4],
                pool_size_before=row[5],
                pool_size_after=row[6],
                utilization=row[7],
                timestamp=_from_iso(row[8]) or 0.0,
            )
            for row in rows
        ]

    async def trim_scaling_events(self, keep: int) -> int:
        """
        Delete all but the newest ``keep`` scaling events.

        Args:
            keep: Number of newest events to keep

        Returns:
            Number of events deleted
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            DELETE FROM scaling_events
            WHERE id NOT IN (
                SELECT id FROM scaling_events ORDER BY id DESC LIMIT ?
            )
            """,
            (keep,),
        )
        await conn.commit()
        return cursor.rowcount

    # ========================================================================
    # Alerts
    # ========================================================================

    async def save_alert(self, alert: Alert) -> None:
        """
        Insert or replace an alert keyed by its id.

        Args:
            alert: Alert to store
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT OR REPLACE INTO alerts (
                id, level, subject, metric, value, threshold, message, source,
                timestamp, resolved, resolved_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.id,
                alert.level.value,
                alert.subject,
                alert.metric,
                alert.value,
                alert.threshold,
                alert.message,
                alert.source,
                _to_iso(alert.timestamp),
                1 if alert.resolved else 0,
                _to_iso(alert.resolved_at),
            ),
        )
        await conn.commit()

    def _row_to_alert(self, row: tuple) -> Alert:
        return Alert(
            id=row[0],
            level=AlertLevel(row[1]),
            subject=row[2],
            metric=row[3],
            value=row[4],
            threshold=row[5],
            message=row[6],
            source=row[7],
            timestamp=_from_iso(row[8]) or 0.0,
            resolved=bool(row[9]),
            resolved_at=_from_iso(row[10]),
        )

    async def get_alert(self, alert_id: str) -> Alert | None:
        """
        Retrieve an alert by id.

        Args:
            alert_id: Alert identifier

        Returns:
            Alert if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, level, subject, metric, value, threshold, message, source,
                   timestamp, resolved, resolved_at
            FROM alerts WHERE id = ?
            """,
            (alert_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_alert(row)

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
        conn = await self._get_connection()

        # Build dynamic SQL based on the filters given
        conditions = []
        params: list = []

        if level is not None:
            conditions.append("level = ?")
            params.append(level.value)

        if unresolved_only:
            conditions.append("resolved = 0")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        cursor = await conn.execute(
            f"""
            SELECT id, level, subject, metric, value, threshold, message, source,
                   timestamp, resolved, resolved_at
            FROM alerts {where}
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()

        return [self._row_to_alert(row) for row in rows]

    async def resolve_alert(self, alert_id: str, resolved_at: float) -> bool:
        """
        Mark an alert resolved.

        Args:
            alert_id: Alert identifier
            resolved_at: Resolution timestamp

        Returns:
            True if an unresolved alert was updated, False otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            "UPDATE alerts SET resolved = 1, resolved_at = ? WHERE id = ? AND resolved = 0",
            (_to_iso(resolved_at), alert_id),
        )
        await conn.commit()
        return cursor.rowcount > 0
