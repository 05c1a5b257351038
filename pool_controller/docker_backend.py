"""
Docker CLI backend for pooled containers.

This module drives the ``docker`` command line through asyncio subprocesses to
create, start, inspect, sample and remove long-lived pool containers. Every
call is bounded by the configured operation timeout; a timed-out command is
killed and reported as BackendTimeoutError.
"""

import asyncio
import json
import logging
import re
import time
from datetime import datetime

from pool_common.backend import BackendContainerInfo, ContainerBackend
from pool_common.config import (
    BackendConfig,
    QuotaConfig,
    TemplateConfig,
    parse_cpu_limit,
    parse_memory_limit,
)
from pool_common.errors import (
    BackendError,
    BackendTimeoutError,
    ContainerCreationError,
    QuotaExceededError,
)
from pool_common.models import ResourceSample

logger = logging.getLogger(__name__)

POOL_ID_PATTERN = re.compile(r"^[0-9a-f]{12}$")

# Fragments of docker's error output that mean the limits themselves were refused
_QUOTA_ERROR_MARKERS = (
    "minimum memory limit",
    "invalid memory",
    "range of cpus",
    "nanocpus",
    "pids-limit",
    "storage-opt",
    "storage option",
)

_SIZE_UNITS = {
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


def parse_size(value: str) -> int:
    """
    Parse a docker-formatted size such as "1.5MiB" or "12kB" into bytes.

    Returns:
        Number of bytes (0 when the value is empty or unrecognized)
    """
    match = re.fullmatch(r"\s*([\d.]+)\s*([a-zA-Z]*)\s*", value or "")
    if not match:
        return 0
    unit = match.group(2).lower() or "b"
    return int(float(match.group(1)) * _SIZE_UNITS.get(unit, 1))


def parse_percent(value: str) -> float | None:
    """Parse "12.34%" into 12.34."""
    try:
        return float((value or "").strip().rstrip("%"))
    except ValueError:
        return None


def _parse_docker_time(value: str | None) -> datetime | None:
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        # Docker emits nanosecond precision; fromisoformat accepts at most micro
        trimmed = re.sub(r"(\.\d{6})\d+", r"\1", value)
        return datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
    except ValueError:
        return None


class DockerBackend(ContainerBackend):
    """
    ContainerBackend implementation on top of the docker CLI.

    Containers are named "{prefix}{pool_id}" and carry the pool label so that
    reconciliation can find every container the pool owns, including ones
    left behind by a previous controller process.
    """

    def __init__(self, config: BackendConfig | None = None, docker_binary: str = "docker"):
        """
        Initialize the Docker backend.

        Args:
            config: Timeout, container name prefix and pool label
            docker_binary: Name or path of the docker executable
        """
        self.config = config or BackendConfig()
        self.docker_binary = docker_binary
        self.commands_run = 0
        self.timeouts = 0

    async def _run(
        self, *args: str, operation: str, timeout: float | None = None
    ) -> tuple[int, str, str]:
        """
        Run one docker command with a timeout.

        Returns:
            Tuple of (returncode, stdout, stderr)

        Raises:
            BackendTimeoutError: If the command does not finish in time
            BackendError: If the docker binary cannot be executed
        """
        limit = timeout if timeout is not None else self.config.operation_timeout
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BackendError(f"Cannot execute {self.docker_binary}: {e}") from e

        self.commands_run += 1
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            self.timeouts += 1
            process.kill()
            await process.wait()
            logger.warning(f"docker {operation} timed out after {limit}s")
            raise BackendTimeoutError(operation, limit) from None

        assert process.returncode is not None
        return process.returncode, stdout.decode(), stderr.decode()

    async def ping(self) -> None:
        """
        Check that the docker daemon answers.

        Raises:
            BackendError: If the daemon is unreachable
        """
        code, stdout, stderr = await self._run(
            "info", "--format", "{{.ServerVersion}}", operation="info"
        )
        if code != 0:
            raise BackendError(f"Docker daemon unreachable: {stderr.strip()}")
        logger.debug(f"Docker daemon reachable (server {stdout.strip()})")

    def build_create_args(
        self, name: str, template: TemplateConfig, quota: QuotaConfig
    ) -> list[str]:
        """
        Build the ``docker create`` argument list for a pool container.

        Raises:
            QuotaExceededError: If a quota value cannot be parsed
        """
        memory_bytes = parse_memory_limit(quota.memory)
        nano_cpus = parse_cpu_limit(quota.cpus)

        args = [
            "create",
            "--name",
            name,
            "--label",
            self.config.pool_label,
            "--label",
            f"ci-pool.template={template.name}",
            "-w",
            template.working_dir,
            "--network",
            template.network_mode,
            "--memory",
            str(memory_bytes),
            "--cpus",
            f"{nano_cpus / 1e9:g}",
            "--pids-limit",
            str(quota.pids),
            "--security-opt",
            "no-new-privileges:true",
            "--tmpfs",
            f"/tmp:rw,noexec,nosuid,size={template.tmpfs_size}",
        ]
        if quota.disk:
            args.extend(["--storage-opt", f"size={quota.disk}"])
        for key, value in sorted(template.labels.items()):
            args.extend(["--label", f"{key}={value}"])
        for key, value in sorted(template.env.items()):
            args.extend(["-e", f"{key}={value}"])
        args.extend([template.base_image, "sh", "-c", template.keep_alive_command])
        return args

    async def create_container(
        self, name: str, template: TemplateConfig, quota: QuotaConfig
    ) -> str:
        """
        Create (but do not start) a pool container.

        Args:
            name: Backend container name
            template: Image, working directory, labels and environment
            quota: Resource limits

        Returns:
            Full docker container id

        Raises:
            QuotaExceededError: If the limits are invalid or rejected by docker
            ContainerCreationError: If docker refuses to create the container
            BackendTimeoutError: If docker does not answer in time
        """
        args = self.build_create_args(name, template, quota)
        code, stdout, stderr = await self._run(*args, operation="create")

        if code != 0:
            error = stderr.strip()
            if any(marker in error.lower() for marker in _QUOTA_ERROR_MARKERS):
                raise QuotaExceededError(f"Docker rejected resource limits: {error}")
            raise ContainerCreationError(f"Failed to create container {name}: {error}")

        runtime_id = stdout.strip()
        logger.debug(f"Created docker container {name} ({runtime_id[:12]})")
        return runtime_id

    async def start_container(self, runtime_id: str) -> None:
        """
        Start a created container.

        Raises:
            BackendError: If container start fails
        """
        code, _, stderr = await self._run("start", runtime_id, operation="start")
        if code != 0:
            raise BackendError(f"Failed to start container: {stderr.strip()}")

    async def stop_container(self, runtime_id: str, timeout: int = 10) -> None:
        """
        Stop a running container.

        Args:
            runtime_id: Docker container id
            timeout: Seconds docker waits before killing the container

        Raises:
            BackendError: If stop operation fails
        """
        code, _, stderr = await self._run(
            "stop",
            "--time",
            str(timeout),
            runtime_id,
            operation="stop",
            timeout=self.config.operation_timeout + timeout,
        )
        if code != 0:
            error = stderr.strip()
            if "No such container" not in error:
                raise BackendError(f"Failed to stop container: {error}")

    async def remove_container(self, runtime_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Args:
            runtime_id: Docker container id
            force: If True, force removal even if running

        Raises:
            BackendError: If removal fails
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(runtime_id)

        code, _, stderr = await self._run(*args, operation="rm")
        if code != 0:
            # Ignore "already removed" errors
            error = stderr.strip()
            if "No such container" not in error:
                raise BackendError(f"Failed to remove container: {error}")

    async def inspect_container(self, runtime_id: str) -> BackendContainerInfo | None:
        """
        Get information about a container.

        Returns:
            BackendContainerInfo if container exists, None otherwise

        Raises:
            BackendError: If docker output cannot be parsed
        """
        code, stdout, _ = await self._run("inspect", runtime_id, operation="inspect")
        if code != 0:
            # Container doesn't exist
            return None

        try:
            data = json.loads(stdout)
            if not data:
                return None

            container = data[0]
            state = container["State"]
            name = container.get("Name", "").lstrip("/")
            labels = (container.get("Config") or {}).get("Labels") or {}

            return BackendContainerInfo(
                runtime_id=container["Id"],
                name=name,
                status=state["Status"].lower(),
                pool_id=self._extract_pool_id(name),
                exit_code=state.get("ExitCode"),
                started_at=_parse_docker_time(state.get("StartedAt")),
                finished_at=_parse_docker_time(state.get("FinishedAt")),
                labels=labels,
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise BackendError(f"Failed to parse container info: {e}") from e

    async def container_stats(self, runtime_id: str) -> ResourceSample | None:
        """
        Take a one-shot ``docker stats`` sample.

        Returns:
            ResourceSample keyed by runtime id, or None if the container is gone
        """
        code, stdout, stderr = await self._run(
            "stats",
            "--no-stream",
            "--format",
            "{{json .}}",
            runtime_id,
            operation="stats",
        )
        if code != 0:
            if "No such container" in stderr:
                return None
            raise BackendError(f"Failed to read container stats: {stderr.strip()}")

        line = stdout.strip().splitlines()[0] if stdout.strip() else ""
        if not line:
            return None
        try:
            stats = json.loads(line)
        except json.JSONDecodeError as e:
            raise BackendError(f"Failed to parse container stats: {e}") from e

        mem_used = (stats.get("MemUsage") or "").split("/")[0]
        net_in, _, net_out = (stats.get("NetIO") or "").partition("/")
        pids = stats.get("PIDs")

        return ResourceSample(
            subject=runtime_id,
            timestamp=time.time(),
            cpu_percent=parse_percent(stats.get("CPUPerc", "")),
            memory_percent=parse_percent(stats.get("MemPerc", "")),
            memory_bytes=parse_size(mem_used) or None,
            network_bytes=parse_size(net_in) + parse_size(net_out),
            pids=int(pids) if pids and str(pids).isdigit() else None,
        )

    async def container_logs(self, runtime_id: str, tail: int = 100) -> str:
        """
        Get the last lines of a container's output.

        Args:
            runtime_id: Docker container id
            tail: Number of lines from the end

        Raises:
            BackendError: If docker cannot read the logs
        """
        code, stdout, stderr = await self._run(
            "logs", "--tail", str(tail), runtime_id, operation="logs"
        )
        if code != 0:
            raise BackendError(f"Failed to read container logs: {stderr.strip()}")
        # docker writes the container's stderr stream to our stderr
        return stdout + stderr

    async def exec_in_container(self, runtime_id: str, command: str) -> int:
        """
        Run a shell command in a running container.

        Returns:
            Exit code of the command
        """
        code, _, stderr = await self._run(
            "exec", runtime_id, "sh", "-c", command, operation="exec"
        )
        if code != 0:
            logger.debug(
                f"Command in {runtime_id[:12]} exited with {code}: {stderr.strip()}"
            )
        return code

    async def list_pool_containers(self) -> list[BackendContainerInfo]:
        """
        List all containers carrying the pool label (running and stopped).

        Returns:
            List of BackendContainerInfo objects

        Raises:
            BackendError: If docker cannot list containers
        """
        code, stdout, stderr = await self._run(
            "ps",
            "-a",
            "--no-trunc",
            "--filter",
            f"label={self.config.pool_label}",
            "--format",
            "{{.ID}}\t{{.Names}}\t{{.State}}",
            operation="ps",
        )
        if code != 0:
            raise BackendError(f"Failed to list containers: {stderr.strip()}")

        containers = []
        for line in stdout.strip().split("\n"):
            if not line:
                continue
            parts = line.split("\t")
            if len(parts) != 3:
                logger.warning(f"Unexpected docker ps line: {line!r}")
                continue
            runtime_id, name, status = parts
            containers.append(
                BackendContainerInfo(
                    runtime_id=runtime_id,
                    name=name,
                    status=status.lower(),
                    pool_id=self._extract_pool_id(name),
                )
            )

        return containers

    def _extract_pool_id(self, container_name: str) -> str | None:
        """
        Extract the pool container id from a docker name by stripping the prefix.

        Args:
            container_name: Full container name from Docker

        Returns:
            Pool id if the name matches our prefix and id pattern, None otherwise
        """
        if not container_name.startswith(self.config.container_prefix):
            return None

        potential_id = container_name[len(self.config.container_prefix) :]
        if POOL_ID_PATTERN.match(potential_id):
            return potential_id

        return None
