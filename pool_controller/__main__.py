"""
Standalone entrypoint for running the container pool controller.

Usage:
    python -m pool_controller [OPTIONS]
    pool-controller [OPTIONS]  (after pip install)

Environment Variables:
    POOL_DB_PATH: Database path (default: ci_pool.db)
    POOL_MIN_SIZE: Minimum pool size (default: 3)
    POOL_TARGET_SIZE: Initial pool size (default: 8)
    POOL_MAX_SIZE: Maximum pool size (default: 20)
    POOL_BASE_IMAGE: Container base image (default: ubuntu:22.04)
    POOL_CONTAINER_PREFIX: Container name prefix (default: ci-pool-)
    POOL_MONITOR_INTERVAL: Seconds between resource samples (default: 15)
    POOL_SCALING_INTERVAL: Seconds between scaling evaluations (default: 30)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any

from pool_common.config import PoolConfig
from pool_controller.docker_backend import DockerBackend
from pool_controller.orchestrator import PoolOrchestrator
from pool_persistence.sqlite_repository import SQLitePoolRepository

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="CI Pool Controller - managed pool of reusable execution containers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  POOL_DB_PATH            Database path (default: ci_pool.db)
  POOL_MIN_SIZE           Minimum pool size (default: 3)
  POOL_TARGET_SIZE        Initial pool size (default: 8)
  POOL_MAX_SIZE           Maximum pool size (default: 20)
  POOL_BASE_IMAGE         Container base image (default: ubuntu:22.04)
  POOL_CONTAINER_PREFIX   Container name prefix (default: ci-pool-)
  POOL_MONITOR_INTERVAL   Seconds between resource samples (default: 15)
  POOL_SCALING_INTERVAL   Seconds between scaling evaluations (default: 30)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  pool-controller

  # Small pool for a laptop
  pool-controller --min-size 1 --target-size 2 --max-size 4

  # Enable debug logging
  pool-controller --log-level DEBUG
        """,
    )

    parser.add_argument("--db-path", type=str, default=None, help="Path to SQLite database file")
    parser.add_argument("--min-size", type=int, default=None, help="Minimum pool size")
    parser.add_argument("--target-size", type=int, default=None, help="Initial pool size")
    parser.add_argument("--max-size", type=int, default=None, help="Maximum pool size")
    parser.add_argument("--base-image", type=str, default=None, help="Container base image")
    parser.add_argument(
        "--container-prefix",
        type=str,
        default=None,
        help="Container name prefix for namespace isolation",
    )
    parser.add_argument(
        "--monitor-interval",
        type=float,
        default=None,
        help="Seconds between resource samples",
    )
    parser.add_argument(
        "--scaling-interval",
        type=float,
        default=None,
        help="Seconds between scaling evaluations",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def _number_option(
    cli_value: float | None, env_var: str, default: float, cast: type = float
) -> Any:
    """
    Resolve a positive numeric option from CLI args, then environment, then default.

    Invalid values fall back to the default with a warning.
    """
    if cli_value is not None:
        if cli_value <= 0:
            logger.warning(f"Invalid value {cli_value} for {env_var}, using default {default}")
            return default
        return cli_value

    raw = os.environ.get(env_var)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {env_var}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {env_var}={value}, using default {default}")
        return default
    return value


def get_database_path(args: argparse.Namespace) -> str:
    if args.db_path:
        return args.db_path
    return os.environ.get("POOL_DB_PATH", "ci_pool.db")


def build_config(args: argparse.Namespace) -> PoolConfig:
    """
    Build the pool configuration from CLI args and environment.

    Raises:
        ValueError: If the resulting configuration is inconsistent
    """
    config = PoolConfig()
    size = config.size

    # min size may legitimately be zero, so it is not routed through _number_option
    if args.min_size is not None:
        size.min_size = args.min_size
    else:
        raw = os.environ.get("POOL_MIN_SIZE")
        if raw is not None:
            try:
                size.min_size = int(raw)
            except ValueError:
                logger.warning(f"Invalid POOL_MIN_SIZE={raw}, using default {size.min_size}")

    size.target_size = _number_option(args.target_size, "POOL_TARGET_SIZE", size.target_size, int)
    size.max_size = _number_option(args.max_size, "POOL_MAX_SIZE", size.max_size, int)

    if args.base_image is not None:
        config.template.base_image = args.base_image
    else:
        config.template.base_image = os.environ.get("POOL_BASE_IMAGE", config.template.base_image)

    if args.container_prefix is not None:
        config.backend.container_prefix = args.container_prefix
    else:
        config.backend.container_prefix = os.environ.get(
            "POOL_CONTAINER_PREFIX", config.backend.container_prefix
        )

    config.monitor.sampling_interval = _number_option(
        args.monitor_interval, "POOL_MONITOR_INTERVAL", config.monitor.sampling_interval
    )
    config.scaling.evaluation_interval = _number_option(
        args.scaling_interval, "POOL_SCALING_INTERVAL", config.scaling.evaluation_interval
    )

    # Keep target inside the configured bounds rather than refusing to start
    size.target_size = min(max(size.target_size, size.min_size), size.max_size)
    return config.validate()


async def run_controller(args: argparse.Namespace) -> None:
    """
    Initialize and run the pool orchestrator until SIGINT or SIGTERM.

    Args:
        args: Parsed command-line arguments
    """
    db_path = get_database_path(args)
    config = build_config(args)

    logger.info("Starting CI Pool Controller")
    logger.info(f"  Database: {db_path}")
    logger.info(
        f"  Pool size: min={config.size.min_size} target={config.size.target_size} "
        f"max={config.size.max_size}"
    )
    logger.info(f"  Base image: {config.template.base_image}")
    logger.info(f"  Container prefix: {config.backend.container_prefix}")

    repository = SQLitePoolRepository(db_path)
    await repository.initialize()
    logger.info("Database initialized")

    orchestrator = PoolOrchestrator(
        config=config,
        backend=DockerBackend(config.backend),
        repository=repository,
    )

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await orchestrator.start()
        logger.info("Pool controller started successfully")
        await shutdown_event.wait()
    except Exception as e:
        logger.error(f"Pool controller error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Stopping pool controller...")
        await orchestrator.stop()
        logger.info("Closing database connections...")
        await repository.close()
        logger.info("Pool controller stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the pool controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_controller(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
