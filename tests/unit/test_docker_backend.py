"""
Unit tests for DockerBackend.

The docker CLI is replaced by a fake subprocess so the tests check the
arguments sent and the parsing of docker's output without a daemon.
"""

import asyncio
import json

import pytest

from pool_common.config import BackendConfig, QuotaConfig, TemplateConfig
from pool_common.errors import (
    BackendError,
    BackendTimeoutError,
    ContainerCreationError,
    QuotaExceededError,
)
from pool_controller.docker_backend import DockerBackend, parse_percent, parse_size


class FakeProcess:
    def __init__(self, returncode=0, stdout="", stderr="", hang=False):
        self.returncode = returncode
        self._stdout = stdout.encode()
        self._stderr = stderr.encode()
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(3600)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


class FakeDocker:
    """Records docker invocations and answers each with a queued process."""

    def __init__(self):
        self.calls: list[tuple[str, ...]] = []
        self.responses: list[FakeProcess] = []

    def respond(self, **kwargs) -> FakeProcess:
        process = FakeProcess(**kwargs)
        self.responses.append(process)
        return process

    async def __call__(self, *args, **kwargs):
        self.calls.append(args)
        return self.responses.pop(0) if self.responses else FakeProcess()


@pytest.fixture
def docker(monkeypatch):
    fake = FakeDocker()
    monkeypatch.setattr("pool_controller.docker_backend.asyncio.create_subprocess_exec", fake)
    return fake


@pytest.fixture
def backend():
    return DockerBackend(BackendConfig(operation_timeout=5.0))


class TestParsing:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("1.5MiB", int(1.5 * 1024**2)),
            ("12kB", 12_000),
            ("0B", 0),
            ("2GiB", 2 * 1024**3),
            ("", 0),
            ("garbage", 0),
        ],
    )
    def test_parse_size(self, value, expected):
        assert parse_size(value) == expected

    def test_parse_percent(self):
        assert parse_percent("12.34%") == 12.34
        assert parse_percent("--") is None

    def test_extract_pool_id(self, backend):
        assert backend._extract_pool_id("ci-pool-0123456789ab") == "0123456789ab"
        assert backend._extract_pool_id("0123456789ab") is None
        assert backend._extract_pool_id("ci-pool-not-an-id") is None
        assert backend._extract_pool_id("other-0123456789ab") is None

        custom = DockerBackend(BackendConfig(container_prefix="runner_"))
        assert custom._extract_pool_id("runner_0123456789ab") == "0123456789ab"


class TestCreateArgs:
    def test_limits_and_hardening(self, backend):
        template = TemplateConfig(labels={"team": "ci"}, env={"CI": "true"})
        quota = QuotaConfig(cpus="1.5", memory="512m", pids=256, disk="10G")

        args = backend.build_create_args("ci-pool-0123456789ab", template, quota)

        assert args[:3] == ["create", "--name", "ci-pool-0123456789ab"]
        assert args[args.index("--memory") + 1] == str(512 * 1024**2)
        assert args[args.index("--cpus") + 1] == "1.5"
        assert args[args.index("--pids-limit") + 1] == "256"
        assert args[args.index("--storage-opt") + 1] == "size=10G"
        assert "no-new-privileges:true" in args
        assert "ci-pool.managed=true" in args
        assert "team=ci" in args
        assert args[args.index("-e") + 1] == "CI=true"
        assert args[-4:] == ["ubuntu:22.04", "sh", "-c", "tail -f /dev/null"]

    def test_invalid_quota_rejected_before_docker(self, backend, docker):
        with pytest.raises(QuotaExceededError):
            backend.build_create_args("name", TemplateConfig(), QuotaConfig(memory="lots"))
        assert docker.calls == []


class TestCommands:
    @pytest.mark.asyncio
    async def test_create_returns_runtime_id(self, backend, docker):
        docker.respond(stdout="f" * 64 + "\n")

        runtime_id = await backend.create_container(
            "ci-pool-0123456789ab", TemplateConfig(), QuotaConfig()
        )

        assert runtime_id == "f" * 64
        assert docker.calls[0][0] == "docker"
        assert docker.calls[0][1] == "create"

    @pytest.mark.asyncio
    async def test_create_quota_rejection(self, backend, docker):
        docker.respond(
            returncode=125,
            stderr="Error response from daemon: Minimum memory limit allowed is 6MB",
        )
        with pytest.raises(QuotaExceededError):
            await backend.create_container("n", TemplateConfig(), QuotaConfig())

    @pytest.mark.asyncio
    async def test_create_failure(self, backend, docker):
        docker.respond(returncode=125, stderr="Unable to find image 'nope:latest'")
        with pytest.raises(ContainerCreationError):
            await backend.create_container("n", TemplateConfig(), QuotaConfig())

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, docker):
        backend = DockerBackend(BackendConfig(operation_timeout=0.05))
        process = docker.respond(hang=True)

        with pytest.raises(BackendTimeoutError):
            await backend.ping()

        assert process.killed
        assert backend.timeouts == 1

    @pytest.mark.asyncio
    async def test_ping_failure(self, backend, docker):
        docker.respond(returncode=1, stderr="Cannot connect to the Docker daemon")
        with pytest.raises(BackendError):
            await backend.ping()

    @pytest.mark.asyncio
    async def test_remove_ignores_missing_container(self, backend, docker):
        docker.respond(returncode=1, stderr="Error: No such container: abc")
        await backend.remove_container("abc", force=True)
        assert docker.calls[0][1:] == ("rm", "--force", "abc")

        docker.respond(returncode=1, stderr="permission denied")
        with pytest.raises(BackendError):
            await backend.remove_container("abc")

    @pytest.mark.asyncio
    async def test_inspect(self, backend, docker):
        docker.respond(
            stdout=json.dumps(
                [
                    {
                        "Id": "abc123",
                        "Name": "/ci-pool-0123456789ab",
                        "State": {
                            "Status": "exited",
                            "ExitCode": 137,
                            "StartedAt": "2024-01-01T10:00:00.123456789Z",
                            "FinishedAt": "0001-01-01T00:00:00Z",
                        },
                        "Config": {"Labels": {"ci-pool.managed": "true"}},
                    }
                ]
            )
        )

        info = await backend.inspect_container("abc123")

        assert info.name == "ci-pool-0123456789ab"
        assert info.pool_id == "0123456789ab"
        assert info.status == "exited"
        assert info.exit_code == 137
        assert info.started_at.year == 2024
        assert info.finished_at is None
        assert info.labels == {"ci-pool.managed": "true"}

    @pytest.mark.asyncio
    async def test_inspect_missing(self, backend, docker):
        docker.respond(returncode=1, stderr="Error: No such object: abc")
        assert await backend.inspect_container("abc") is None

    @pytest.mark.asyncio
    async def test_stats(self, backend, docker):
        docker.respond(
            stdout=json.dumps(
                {
                    "CPUPerc": "12.50%",
                    "MemPerc": "3.25%",
                    "MemUsage": "64MiB / 2GiB",
                    "NetIO": "1kB / 2kB",
                    "PIDs": "7",
                }
            )
        )

        sample = await backend.container_stats("abc")

        assert sample.subject == "abc"
        assert sample.cpu_percent == 12.5
        assert sample.memory_percent == 3.25
        assert sample.memory_bytes == 64 * 1024**2
        assert sample.network_bytes == 3000
        assert sample.pids == 7

    @pytest.mark.asyncio
    async def test_stats_missing_container(self, backend, docker):
        docker.respond(returncode=1, stderr="Error: No such container: abc")
        assert await backend.container_stats("abc") is None

    @pytest.mark.asyncio
    async def test_exec_returns_exit_code(self, backend, docker):
        docker.respond(returncode=2, stderr="rm: cannot remove")
        assert await backend.exec_in_container("abc", "rm -rf /workspace/*") == 2
        assert docker.calls[0][1:] == ("exec", "abc", "sh", "-c", "rm -rf /workspace/*")

    @pytest.mark.asyncio
    async def test_list_pool_containers(self, backend, docker):
        docker.respond(
            stdout=(
                "aaa\tci-pool-0123456789ab\trunning\n"
                "bbb\tci-pool-stray\texited\n"
                "malformed line\n"
            )
        )

        containers = await backend.list_pool_containers()

        assert [(c.runtime_id, c.pool_id, c.status) for c in containers] == [
            ("aaa", "0123456789ab", "running"),
            ("bbb", None, "exited"),
        ]
        assert "label=ci-pool.managed=true" in docker.calls[0]
