"""Tests for the container backend with the docker CLI mocked out."""

from unittest.mock import AsyncMock, patch

import pytest

from hycore.config import BackendKind, ContainerSettings
from hycore.errors import (
    BackendExecutionError,
    WorldAlreadyExistsError,
    WorldAlreadyRunningError,
    WorldNotFoundError,
    WorldNotRunningError,
)
from hycore.models import BackendStatus, WorldStatus
from hycore.runtime import ContainerBackend, ContainerHandle

from .conftest import make_spec

NAME = "hycore-world-alpha"


class FakeDocker:
    """Answers docker CLI invocations from a small in-memory state."""

    def __init__(self):
        self.calls: list[tuple[str, ...]] = []
        self.containers: dict[str, str] = {}
        self.exit_codes: dict[str, int] = {}
        self.logs = ""

    async def __call__(self, command: str, *args: str, **kwargs):
        self.calls.append(args)
        verb = args[0]
        if verb == "ps":
            return "\n".join(self.containers) + "\n", ""
        if verb == "create":
            name = args[args.index("--name") + 1]
            self.containers[name] = "created"
            return "0123456789abcdef\n", ""
        if verb == "inspect":
            name = args[-1]
            if name not in self.containers:
                raise BackendExecutionError(
                    " ".join(args), returncode=1, stderr=f"Error: No such object: {name}"
                )
            if "{{.State.ExitCode}}" in args:
                return f"{self.exit_codes.get(name, 0)}\n", ""
            return f"'{self.containers[name]}'\n", ""
        if verb == "start":
            self.containers[args[-1]] = "running"
            return args[-1], ""
        if verb in ("stop", "kill"):
            self.containers[args[-1]] = "exited"
            if verb == "kill":
                self.exit_codes[args[-1]] = 137
            return args[-1], ""
        if verb == "rm":
            del self.containers[args[-1]]
            return args[-1], ""
        if verb == "logs":
            return self.logs, "stderr line\n"
        if verb == "wait":
            return f"{self.exit_codes.get(args[-1], 0)}\n", ""
        return "", ""


@pytest.fixture
def docker():
    fake = FakeDocker()
    with patch("hycore.runtime.docker.exec_command", fake):
        yield fake


@pytest.fixture
def backend(tmp_path):
    return ContainerBackend(tmp_path, "itzg/minecraft-server", poll_interval=0.01)


def container_spec(**overrides):
    return make_spec(kind=BackendKind.CONTAINER, **overrides)


class TestCreateArgs:
    def test_resource_limits_and_ports(self, backend, tmp_path):
        args = backend.build_create_args(container_spec(memory="4G", cpus=2, port=25570))

        assert args[0] == "create"
        assert args[args.index("--name") + 1] == NAME
        assert "--memory=4G" in args
        assert "--cpus=2" in args
        assert "--restart=unless-stopped" in args
        assert args[args.index("-p") + 1] == "25570:25565"
        assert f"{(tmp_path / 'alpha').resolve()}:/data" in args
        assert args[-1] == "itzg/minecraft-server"

    def test_environment(self, backend):
        args = backend.build_create_args(container_spec(env={"DIFFICULTY": "hard"}))
        env = [args[i + 1] for i, arg in enumerate(args) if arg == "-e"]

        assert "EULA=TRUE" in env
        assert "MEMORY=4G" in env
        assert "CREATE_CONSOLE_IN_PIPE=true" in env
        assert "DIFFICULTY=hard" in env

    def test_custom_prefix(self, tmp_path):
        backend = ContainerBackend(
            tmp_path, "image", ContainerSettings(prefix="hytale")
        )

        assert backend.container_name("alpha") == "hytale-alpha"


class TestLifecycle:
    async def test_create(self, backend, docker, tmp_path):
        handle = await backend.create(container_spec())

        assert isinstance(handle, ContainerHandle)
        assert handle.name == NAME
        assert handle.container_id == "0123456789abcdef"
        assert (tmp_path / "alpha").is_dir()
        assert await backend.status_of("alpha") == BackendStatus.CREATED

    async def test_create_existing_container(self, backend, docker):
        docker.containers[NAME] = "exited"

        with pytest.raises(WorldAlreadyExistsError):
            await backend.create(container_spec())

    async def test_start_and_stop(self, backend, docker):
        handle = await backend.create(container_spec())

        await backend.start(handle)
        assert await backend.status_of("alpha") == BackendStatus.RUNNING
        with pytest.raises(WorldAlreadyRunningError):
            await backend.start(handle)

        result = await backend.stop(handle, timeout=10)

        assert result.graceful
        assert result.exit_code == 0
        assert ("stop", "-t", "10", NAME) in docker.calls

    async def test_forced_stop(self, backend, docker):
        handle = await backend.create(container_spec())
        await backend.start(handle)

        result = await backend.stop(handle, graceful=False)

        assert not result.graceful
        assert result.exit_code == 137
        assert ("kill", NAME) in docker.calls

    async def test_stop_when_not_running(self, backend, docker):
        handle = await backend.create(container_spec())

        with pytest.raises(WorldNotRunningError):
            await backend.stop(handle)

    async def test_missing_container(self, backend, docker):
        handle = backend.handle_for(container_spec())

        assert await backend.status_of("alpha") == BackendStatus.NOT_FOUND
        with pytest.raises(WorldNotFoundError):
            await backend.start(handle)
        with pytest.raises(WorldNotFoundError):
            await backend.remove(handle)

    async def test_remove_running_container_stops_first(self, backend, docker):
        handle = await backend.create(container_spec())
        await backend.start(handle)

        await backend.remove(handle)

        verbs = [call[0] for call in docker.calls]
        assert verbs.index("stop") < verbs.index("rm")
        assert NAME not in docker.containers

    async def test_send_input(self, backend, docker):
        handle = await backend.create(container_spec())
        with pytest.raises(WorldNotRunningError):
            await backend.send_input(handle, "say hi")

        await backend.start(handle)
        await backend.send_input(handle, "say hi")

        assert ("exec", NAME, "mc-send-to-console", "say hi") in docker.calls

    async def test_tail_logs(self, backend, docker):
        handle = await backend.create(container_spec())
        docker.logs = "line 1\nline 2\n"

        logs = await backend.tail_logs(handle, 50)

        assert logs == "line 1\nline 2\nstderr line"
        assert ("logs", "--tail", "50", NAME) in docker.calls
        with pytest.raises(ValueError):
            await backend.tail_logs(handle, 0)

    async def test_follow_starts_at_container_start(self, backend, docker):
        handle = await backend.create(container_spec())
        assert backend.build_follow_args(handle, 10) == [
            "logs",
            "-f",
            "--tail",
            "10",
            NAME,
        ]

        await backend.start(handle)

        args = backend.build_follow_args(handle)
        assert args[:3] == ["logs", "-f", "--since"]
        assert args[3] == handle.started_at.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        assert args[3].endswith("Z")
        assert args[-1] == NAME

    async def test_wait_for_exit(self, backend, docker):
        handle = await backend.create(container_spec())
        docker.exit_codes[NAME] = 3

        assert await backend.wait_for_exit(handle) == 3

    async def test_startup_signals(self, backend, docker):
        handle = await backend.create(container_spec())
        await backend.start(handle)

        signals = [status async for status in backend.startup_signals(handle)]

        assert signals == [WorldStatus.RUNNING]

    async def test_no_startup_signal_for_exited_container(self, backend, docker):
        handle = await backend.create(container_spec())
        docker.containers[NAME] = "exited"

        assert [status async for status in backend.startup_signals(handle)] == []


class TestDiscovery:
    def test_parse_inspect(self, backend):
        data = [
            {
                "Id": "abc123",
                "State": {"Status": "running", "ExitCode": 0},
                "Config": {"Env": ["EULA=TRUE", "MEMORY=6G", "PATH=/usr/bin"]},
                "HostConfig": {
                    "NanoCpus": 3_000_000_000,
                    "PortBindings": {"25565/tcp": [{"HostPort": "25570"}]},
                },
            }
        ]

        world = backend.parse_inspect("alpha", data)

        assert world.spec.id == "alpha"
        assert world.spec.kind == BackendKind.CONTAINER
        assert world.spec.memory == "6G"
        assert world.spec.cpus == 3
        assert world.spec.port == 25570
        assert world.status == BackendStatus.RUNNING
        assert world.handle.container_id == "abc123"

    async def test_discover_skips_broken_containers(self, backend):
        async def fake_exec(command, *args, **kwargs):
            if args[0] == "ps":
                return "hycore-world-alpha\nhycore-world-broken\n", ""
            if args[-1] == "hycore-world-broken":
                return "not json", ""
            return (
                '[{"Id": "abc", "State": {"Status": "exited", "ExitCode": 0},'
                ' "Config": {"Env": ["MEMORY=2G"]}, "HostConfig": {}}]',
                "",
            )

        with patch("hycore.runtime.docker.exec_command", AsyncMock(side_effect=fake_exec)):
            worlds = await backend.discover()

        assert [world.spec.id for world in worlds] == ["alpha"]
        assert worlds[0].status == BackendStatus.EXITED

    async def test_verify_runtime(self, backend):
        with patch(
            "hycore.runtime.docker.exec_command",
            AsyncMock(side_effect=BackendExecutionError("docker version", stderr="daemon down")),
        ):
            check = await backend.verify_runtime()

        assert not check.available
        assert "daemon down" in check.message
