"""
Container backend driven through the docker command line.

Each world is one container named ``<prefix>-<world id>`` with its data
directory mounted at ``/data``.
"""

import asyncio
import contextlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiofiles.os as aioos

from ..config import BackendKind, ContainerSettings
from ..errors import (
    BackendExecutionError,
    WorldAlreadyExistsError,
    WorldAlreadyRunningError,
    WorldNotFoundError,
    WorldNotRunningError,
)
from ..log_broadcast.lines import merge_streams
from ..logger import logger
from ..models import BackendStatus, LogEvent, WorldSpec, WorldStatus
from ..utils.exec import exec_command, spawn_command
from .base import (
    BackendHandle,
    DiscoveredWorld,
    RuntimeBackend,
    RuntimeCheck,
    StopResult,
    validate_tail,
)

# docker reports 128 + SIGKILL when it had to kill the container
KILLED_EXIT_CODE = 137


@dataclass
class ContainerHandle(BackendHandle):
    name: str
    container_id: str | None = None
    # set when this agent starts the container, bounds the log follow
    started_at: datetime | None = None


class ContainerBackend(RuntimeBackend):
    kind = BackendKind.CONTAINER
    persistent = True

    def __init__(
        self,
        worlds_path: str | Path,
        image: str,
        config: ContainerSettings | None = None,
        poll_interval: float = 0.5,
    ):
        self._worlds_path = Path(worlds_path)
        self._image = image
        self._config = config or ContainerSettings()
        self._poll_interval = poll_interval

    def container_name(self, world_id: str) -> str:
        return f"{self._config.prefix}-{world_id}"

    def get_data_path(self, world_id: str) -> Path:
        return self._worlds_path / world_id

    async def _docker(self, *args: str) -> str:
        logger.debug(f"Executing: docker {' '.join(args)[:120]}")
        try:
            stdout, stderr = await exec_command(self._config.docker_path, *args)
        except BackendExecutionError as e:
            logger.error(f"Docker command failed: {e}")
            raise
        if stderr.strip() and "WARNING" not in stderr:
            logger.warning(f"docker {args[0]} stderr: {stderr.strip()}")
        return stdout.strip()

    async def exists(self, world_id: str) -> bool:
        name = self.container_name(world_id)
        try:
            result = await self._docker(
                "ps", "-a", "--filter", f"name=^{name}$", "--format", "{{.Names}}"
            )
        except BackendExecutionError:
            return False
        return name in result.splitlines()

    async def status_of(self, world_id: str) -> BackendStatus:
        name = self.container_name(world_id)
        try:
            result = await self._docker(
                "inspect", "--format", "{{.State.Status}}", name
            )
        except BackendExecutionError as e:
            if "No such" in e.stderr:
                return BackendStatus.NOT_FOUND
            raise
        return BackendStatus.parse(result)

    def handle_for(self, spec: WorldSpec) -> ContainerHandle:
        return ContainerHandle(
            world_id=spec.id, kind=self.kind, name=self.container_name(spec.id)
        )

    def build_create_args(self, spec: WorldSpec) -> list[str]:
        """Arguments for ``docker create`` built from the world spec."""
        name = self.container_name(spec.id)
        env = {
            "EULA": "TRUE",
            "MEMORY": spec.memory,
            "CREATE_CONSOLE_IN_PIPE": "true",
            **spec.env,
        }
        args = [
            "create",
            "--name",
            name,
            f"--memory={spec.memory}",
            f"--cpus={spec.cpus}",
            f"--restart={self._config.restart_policy}",
            "-p",
            f"{spec.port}:{self._config.game_port}",
        ]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend(["-v", f"{self.get_data_path(spec.id).resolve()}:/data"])
        args.append(self._image)
        return args

    async def create(self, spec: WorldSpec) -> ContainerHandle:
        if await self.exists(spec.id):
            raise WorldAlreadyExistsError(spec.id)

        await aioos.makedirs(self.get_data_path(spec.id), exist_ok=True)
        container_id = await self._docker(*self.build_create_args(spec))

        handle = self.handle_for(spec)
        handle.container_id = container_id
        logger.info(
            f"World '{spec.id}' created with container ID: {container_id[:12]}"
        )
        return handle

    async def start(self, handle: BackendHandle) -> None:
        handle = self._container(handle)
        status = await self.status_of(handle.world_id)
        if status == BackendStatus.NOT_FOUND:
            raise WorldNotFoundError(handle.world_id)
        if status.is_running:
            raise WorldAlreadyRunningError(handle.world_id)

        handle.started_at = datetime.now(timezone.utc)
        await self._docker("start", handle.name)
        logger.info(f"World '{handle.world_id}' started")

    async def stop(
        self, handle: BackendHandle, graceful: bool = True, timeout: float = 30.0
    ) -> StopResult:
        handle = self._container(handle)
        status = await self.status_of(handle.world_id)
        if status == BackendStatus.NOT_FOUND:
            raise WorldNotFoundError(handle.world_id)
        if not status.is_running:
            raise WorldNotRunningError(handle.world_id)

        if not graceful:
            await self._docker("kill", handle.name)
            logger.info(f"World '{handle.world_id}' killed")
            return StopResult(graceful=False, exit_code=await self._exit_code(handle))

        # docker stop sends SIGTERM and kills the container after the timeout
        try:
            await asyncio.wait_for(
                self._docker("stop", "-t", str(int(timeout)), handle.name),
                timeout + self._stop_grace(timeout),
            )
        except TimeoutError:
            logger.warning(
                f"docker stop for '{handle.world_id}' hung past {timeout:g}s, killing"
            )
            await self._docker("kill", handle.name)
            return StopResult(graceful=False, exit_code=await self._exit_code(handle))

        exit_code = await self._exit_code(handle)
        logger.info(f"World '{handle.world_id}' stopped")
        return StopResult(graceful=exit_code != KILLED_EXIT_CODE, exit_code=exit_code)

    @staticmethod
    def _stop_grace(timeout: float) -> float:
        return max(5.0, timeout / 3)

    async def _exit_code(self, handle: ContainerHandle) -> int | None:
        try:
            result = await self._docker(
                "inspect", "--format", "{{.State.ExitCode}}", handle.name
            )
            return int(result)
        except (BackendExecutionError, ValueError):
            return None

    async def remove(self, handle: BackendHandle) -> None:
        handle = self._container(handle)
        status = await self.status_of(handle.world_id)
        if status == BackendStatus.NOT_FOUND:
            raise WorldNotFoundError(handle.world_id)

        if status.is_running:
            await self._docker("stop", handle.name)

        await self._docker("rm", handle.name)
        logger.info(f"World '{handle.world_id}' deleted")

    async def tail_logs(self, handle: BackendHandle, n: int) -> str:
        handle = self._container(handle)
        validate_tail(n)
        if await self.status_of(handle.world_id) == BackendStatus.NOT_FOUND:
            raise WorldNotFoundError(handle.world_id)

        # the container's stderr comes back on our stderr
        stdout, stderr = await exec_command(
            self._config.docker_path, "logs", "--tail", str(n), handle.name
        )
        return "\n".join(part.rstrip("\n") for part in (stdout, stderr) if part)

    def build_follow_args(self, handle: ContainerHandle, tail: int = 0) -> list[str]:
        """
        Arguments for ``docker logs -f``.

        A container started by this agent is followed from its start time, so
        lines printed before the follow attaches are not lost and earlier runs
        stay out. Otherwise only the last ``tail`` lines are replayed.
        """
        if handle.started_at is not None:
            since = handle.started_at.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
            return ["logs", "-f", "--since", since, handle.name]
        return ["logs", "-f", "--tail", str(tail), handle.name]

    async def follow_logs(
        self, handle: BackendHandle, tail: int = 0
    ) -> AsyncIterator[LogEvent]:
        handle = self._container(handle)
        process = await spawn_command(
            self._config.docker_path, *self.build_follow_args(handle, tail)
        )
        try:
            async for event in merge_streams(process.stdout, process.stderr):
                yield event
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
            await process.wait()

    async def send_input(self, handle: BackendHandle, line: str) -> None:
        handle = self._container(handle)
        status = await self.status_of(handle.world_id)
        if status == BackendStatus.NOT_FOUND:
            raise WorldNotFoundError(handle.world_id)
        if not status.is_running:
            raise WorldNotRunningError(handle.world_id)

        await self._docker("exec", handle.name, *self._config.console_command, line)

    async def wait_for_exit(self, handle: BackendHandle) -> int | None:
        handle = self._container(handle)
        result = await self._docker("wait", handle.name)
        try:
            return int(result.splitlines()[-1])
        except (IndexError, ValueError):
            return None

    async def startup_signals(
        self, handle: BackendHandle
    ) -> AsyncIterator[WorldStatus]:
        # the engine is the authority here, poll it until it reports running
        while True:
            status = await self.status_of(handle.world_id)
            if status == BackendStatus.RUNNING:
                yield WorldStatus.RUNNING
                return
            if status in (
                BackendStatus.NOT_FOUND,
                BackendStatus.EXITED,
                BackendStatus.DEAD,
            ):
                return
            await asyncio.sleep(self._poll_interval)

    async def discover(self) -> list[DiscoveredWorld]:
        result = await self._docker(
            "ps",
            "-a",
            "--filter",
            f"name=^{self._config.prefix}-",
            "--format",
            "{{.Names}}",
        )
        prefix = f"{self._config.prefix}-"
        worlds = []
        for name in result.splitlines():
            name = name.strip()
            if not name.startswith(prefix):
                continue
            try:
                inspect_output = await self._docker("inspect", name)
                worlds.append(
                    self.parse_inspect(name[len(prefix) :], json.loads(inspect_output))
                )
            except (BackendExecutionError, ValueError, KeyError, IndexError) as e:
                logger.warning(f"Skipping container {name} during discovery: {e}")
        return worlds

    def parse_inspect(self, world_id: str, data: list | dict) -> DiscoveredWorld:
        """
        Rebuild the world spec from ``docker inspect`` output.

        Extra environment variables cannot be told apart from the image's own,
        so a discovered spec carries none.
        """
        if isinstance(data, list):
            data = data[0]
        host_config = data.get("HostConfig") or {}
        state = data.get("State") or {}
        env = dict(
            item.split("=", 1)
            for item in (data.get("Config") or {}).get("Env") or []
            if "=" in item
        )

        port = self._config.game_port
        for bindings in (host_config.get("PortBindings") or {}).values():
            if bindings:
                port = int(bindings[0]["HostPort"])
                break

        nano_cpus = host_config.get("NanoCpus") or 0
        memory = env.get("MEMORY") or str(host_config.get("Memory") or "1G")
        spec = WorldSpec(
            id=world_id,
            kind=self.kind,
            memory=memory,
            cpus=max(1, round(nano_cpus / 1e9)),
            port=port,
        )
        handle = self.handle_for(spec)
        handle.container_id = data.get("Id")
        return DiscoveredWorld(
            spec=spec,
            handle=handle,
            status=BackendStatus.parse(state.get("Status", "")),
            exit_code=state.get("ExitCode"),
        )

    async def verify_runtime(self) -> RuntimeCheck:
        try:
            version = await self._docker(
                "version", "--format", "{{.Server.Version}}"
            )
        except BackendExecutionError as e:
            return RuntimeCheck(kind=self.kind, available=False, message=str(e))
        return RuntimeCheck(kind=self.kind, available=True, version=version)

    def _container(self, handle: BackendHandle) -> ContainerHandle:
        if not isinstance(handle, ContainerHandle):
            raise TypeError(f"Expected a container handle, got {handle!r}")
        return handle
