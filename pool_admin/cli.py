"""
Admin CLI for inspecting the container pool's persisted state.

Provides commands for job patterns, scaling history and alerts.
"""

import asyncio
import json
import os
import sys
import time
from pathlib import Path

import click

from pool_common.models import AlertLevel, format_timestamp
from pool_persistence.sqlite_repository import SQLitePoolRepository


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("POOL_DB_PATH", str(Path.home() / ".ci" / "pool.db"))


def get_repository() -> SQLitePoolRepository:
    """Get the repository instance."""
    return SQLitePoolRepository(get_db_path())


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Pool Admin - Inspect job patterns, scaling history and alerts."""
    pass


@cli.group()
def patterns():
    """Inspect learned job patterns."""
    pass


@cli.group()
def scaling():
    """Inspect scaling decisions."""
    pass


@cli.group()
def alerts():
    """Manage resource alerts."""
    pass


# ============================================================================
# Pattern Commands
# ============================================================================


@patterns.command("list")
@click.option("--limit", default=50, show_default=True, help="Maximum patterns to show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def patterns_list(limit: int, json_output: bool):
    """List job patterns, most recently seen first."""

    async def list_patterns():
        repo = get_repository()
        await repo.initialize()

        try:
            items = await repo.load_patterns(limit=limit)

            if json_output:
                click.echo(json.dumps([p.to_dict() for p in items], indent=2))
                return

            if not items:
                click.echo("No patterns found.")
                return

            click.echo(
                f"\n{'Signature':<18} {'Repository':<30} {'Workflow':<20} "
                f"{'Jobs':>6} {'Success':>8} {'Avg(s)':>8}"
            )
            click.echo("-" * 95)
            for p in items:
                click.echo(
                    f"{p.signature:<18} {p.repository[:30]:<30} {p.workflow[:20]:<20} "
                    f"{p.total_jobs:>6} {p.success_rate:>8.0%} {p.avg_duration:>8.1f}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_patterns())


@patterns.command("delete")
@click.argument("signature")
def patterns_delete(signature: str):
    """Forget a job pattern."""

    async def delete():
        repo = get_repository()
        await repo.initialize()

        try:
            if not await repo.delete_pattern(signature):
                click.echo(f"Error: Pattern not found: {signature}", err=True)
                sys.exit(1)
            click.echo(f"✓ Pattern deleted: {signature}")

        finally:
            await repo.close()

    run_async(delete())


# ============================================================================
# Scaling Commands
# ============================================================================


@scaling.command("history")
@click.option("--limit", default=20, show_default=True, help="Number of events to show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def scaling_history(limit: int, json_output: bool):
    """Show recent scaling events, newest first."""

    async def history():
        repo = get_repository()
        await repo.initialize()

        try:
            events = await repo.list_scaling_events(limit=limit)

            if json_output:
                click.echo(json.dumps([e.to_dict() for e in events], indent=2))
                return

            if not events:
                click.echo("No scaling events found.")
                return

            click.echo(f"\n{'Time':<22} {'Direction':<10} {'Delta':>6} {'Size':>9}  Reason")
            click.echo("-" * 90)
            for e in events:
                size = f"{e.pool_size_before}->{e.pool_size_after}"
                click.echo(
                    f"{format_timestamp(e.timestamp):<22} {e.direction.value:<10} "
                    f"{e.delta:>+6} {size:>9}  {e.reason}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(history())


# ============================================================================
# Alert Commands
# ============================================================================


@alerts.command("list")
@click.option(
    "--level",
    type=click.Choice([level.value for level in AlertLevel]),
    default=None,
    help="Only show alerts of this level",
)
@click.option("--unresolved", is_flag=True, help="Only show unresolved alerts")
@click.option("--limit", default=50, show_default=True, help="Maximum alerts to show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def alerts_list(level: str | None, unresolved: bool, limit: int, json_output: bool):
    """List alerts, newest first."""

    async def list_alerts():
        repo = get_repository()
        await repo.initialize()

        try:
            items = await repo.list_alerts(
                level=AlertLevel(level) if level else None,
                unresolved_only=unresolved,
                limit=limit,
            )

            if json_output:
                click.echo(json.dumps([a.to_dict() for a in items], indent=2))
                return

            if not items:
                click.echo("No alerts found.")
                return

            click.echo(f"\n{'ID':<34} {'Level':<9} {'Subject':<14} {'Status':<9} Message")
            click.echo("-" * 100)
            for a in items:
                status = "resolved" if a.resolved else "open"
                click.echo(
                    f"{a.id:<34} {a.level.value:<9} {a.subject[:14]:<14} {status:<9} {a.message}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_alerts())


@alerts.command("resolve")
@click.argument("alert_id")
def alerts_resolve(alert_id: str):
    """Mark an alert as resolved."""

    async def resolve():
        repo = get_repository()
        await repo.initialize()

        try:
            alert = await repo.get_alert(alert_id)
            if not alert:
                click.echo(f"Error: Alert not found: {alert_id}", err=True)
                sys.exit(1)
            if alert.resolved:
                click.echo(f"Alert already resolved: {alert_id}")
                return

            await repo.resolve_alert(alert_id, time.time())
            click.echo(f"✓ Alert resolved: {alert.message}")

        finally:
            await repo.close()

    run_async(resolve())


if __name__ == "__main__":
    cli()
