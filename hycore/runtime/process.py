"""
Direct process backend: runs the Hytale server jar as a child process.

The process offers no query interface, so its lifecycle is inferred from
its console output (see ``SubstringClassifier``) and its exit.
"""

import asyncio
import contextlib
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator

import aiofiles.os as aioos

from ..config import BackendKind, ProcessSettings
from ..errors import (
    BackendExecutionError,
    StopTimeoutError,
    WorldAlreadyExistsError,
    WorldAlreadyRunningError,
    WorldNotFoundError,
    WorldNotRunningError,
)
from ..log_broadcast.classifier import SubstringClassifier
from ..log_broadcast.lines import merge_streams
from ..logger import logger
from ..models import BackendStatus, LogEvent, StreamTag, WorldSpec
from ..utils.exec import exec_command, format_command, spawn_command
from .base import (
    BackendHandle,
    RuntimeBackend,
    RuntimeCheck,
    StopResult,
    validate_tail,
)

JAVA_VERSION_PATTERN = re.compile(r"(?:openjdk|java)(?: version)? \"?(\d+)")


@dataclass
class ProcessHandle(BackendHandle):
    spec: WorldSpec
    server_path: Path
    assets_path: Path
    process: asyncio.subprocess.Process | None = None
    exit_code: int | None = None
    history: deque[str] = field(default_factory=lambda: deque(maxlen=1000))

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None


class ProcessBackend(RuntimeBackend):
    kind = BackendKind.PROCESS

    def __init__(self, worlds_path: str | Path, config: ProcessSettings | None = None):
        self._worlds_path = Path(worlds_path)
        self._config = config or ProcessSettings()
        self._handles: dict[str, ProcessHandle] = {}
        self.classifier = SubstringClassifier(
            self._config.running_patterns, self._config.authenticated_patterns
        )

    async def exists(self, world_id: str) -> bool:
        return world_id in self._handles

    async def status_of(self, world_id: str) -> BackendStatus:
        handle = self._handles.get(world_id)
        if handle is None:
            return BackendStatus.NOT_FOUND
        if handle.process is None:
            return BackendStatus.CREATED
        if handle.running:
            return BackendStatus.RUNNING
        return BackendStatus.EXITED

    def handle_for(self, spec: WorldSpec) -> ProcessHandle:
        server_path = spec.server_path or self._worlds_path / spec.id
        assets_path = spec.assets_path or server_path / "Assets.zip"
        return ProcessHandle(
            world_id=spec.id,
            kind=self.kind,
            spec=spec,
            server_path=Path(server_path),
            assets_path=Path(assets_path),
            history=deque(maxlen=self._config.output_history),
        )

    def build_args(self, handle: ProcessHandle, aot_cache: Path | None = None) -> list[str]:
        """JVM and server arguments for a world, without the java executable."""
        spec = handle.spec
        args = [
            f"-Xms{spec.memory}",
            f"-Xmx{spec.memory}",
            f"-XX:ActiveProcessorCount={spec.cpus}",
        ]
        if aot_cache is not None:
            args.append(f"-XX:AOTCache={aot_cache}")

        args.extend(["-jar", str(handle.server_path / self._config.jar_name)])
        args.extend(["--assets", str(handle.assets_path)])
        args.extend(["--bind", f"{self._config.bind_host}:{spec.port}"])
        args.extend(["--auth-mode", spec.auth_mode])

        if spec.disable_sentry:
            args.append("--disable-sentry")

        if spec.backup:
            args.append("--backup")
            if spec.backup_dir:
                args.extend(["--backup-dir", str(spec.backup_dir)])
            args.extend(["--backup-frequency", str(spec.backup_frequency)])

        return args

    async def _aot_cache_path(self, handle: ProcessHandle) -> Path | None:
        if not handle.spec.aot_cache:
            return None
        aot_path = handle.server_path / self._config.aot_cache_name
        if await aioos.path.exists(aot_path):
            return aot_path
        return None

    async def create(self, spec: WorldSpec) -> ProcessHandle:
        if spec.id in self._handles:
            raise WorldAlreadyExistsError(spec.id)

        handle = self.handle_for(spec)
        jar_path = handle.server_path / self._config.jar_name
        for required in (jar_path, handle.assets_path):
            if not await aioos.path.exists(required):
                raise BackendExecutionError(
                    format_command(self._config.java_path, "-jar", str(jar_path)),
                    stderr=f"{required} not found",
                )

        self._handles[spec.id] = handle
        logger.info(f"World '{spec.id}' registered for {handle.server_path}")
        return handle

    async def start(self, handle: BackendHandle) -> None:
        handle = self._get(handle.world_id)
        if handle.running:
            raise WorldAlreadyRunningError(handle.world_id)

        args = self.build_args(handle, await self._aot_cache_path(handle))
        handle.process = await spawn_command(
            self._config.java_path, *args, cwd=handle.server_path, stdin=True
        )
        handle.exit_code = None
        logger.info(
            f"World '{handle.world_id}' spawned with pid {handle.process.pid}"
        )

    async def stop(
        self, handle: BackendHandle, graceful: bool = True, timeout: float = 30.0
    ) -> StopResult:
        handle = self._get(handle.world_id)
        if not handle.running:
            raise WorldNotRunningError(handle.world_id)
        assert handle.process is not None

        if graceful:
            with contextlib.suppress(WorldNotRunningError):
                await self._write_line(handle, self._config.stop_command)
            try:
                exit_code = await asyncio.wait_for(handle.process.wait(), timeout)
                logger.info(f"World '{handle.world_id}' stopped gracefully")
                return StopResult(graceful=True, exit_code=exit_code)
            except TimeoutError:
                logger.warning(str(StopTimeoutError(handle.world_id, timeout)))

        with contextlib.suppress(ProcessLookupError):
            handle.process.kill()
        exit_code = await handle.process.wait()
        logger.info(f"World '{handle.world_id}' killed")
        return StopResult(graceful=False, exit_code=exit_code)

    async def remove(self, handle: BackendHandle) -> None:
        handle = self._get(handle.world_id)
        if handle.running:
            await self.stop(handle)
        del self._handles[handle.world_id]
        logger.info(f"World '{handle.world_id}' deleted")

    async def tail_logs(self, handle: BackendHandle, n: int) -> str:
        validate_tail(n)
        handle = self._get(handle.world_id)
        return "\n".join(list(handle.history)[-n:])

    async def follow_logs(
        self, handle: BackendHandle, tail: int = 0
    ) -> AsyncIterator[LogEvent]:
        """
        Read the process pipes until they close.

        A pipe has a single reader, so this is meant to be consumed once per
        start by the capture session, which fans the lines out further.
        """
        handle = self._get(handle.world_id)
        if handle.process is None:
            raise WorldNotRunningError(handle.world_id)

        if tail > 0:
            for line in list(handle.history)[-tail:]:
                yield LogEvent(stream=StreamTag.STDOUT, text=line)

        async for event in merge_streams(handle.process.stdout, handle.process.stderr):
            handle.history.append(event.text)
            yield event

    async def send_input(self, handle: BackendHandle, line: str) -> None:
        handle = self._get(handle.world_id)
        if not handle.running:
            raise WorldNotRunningError(handle.world_id)
        await self._write_line(handle, line)

    async def _write_line(self, handle: ProcessHandle, line: str) -> None:
        assert handle.process is not None
        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            raise WorldNotRunningError(handle.world_id)
        try:
            stdin.write(f"{line}\n".encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorldNotRunningError(handle.world_id) from e

    async def wait_for_exit(self, handle: BackendHandle) -> int | None:
        handle = self._get(handle.world_id)
        if handle.process is None:
            return None
        handle.exit_code = await handle.process.wait()
        return handle.exit_code

    async def verify_runtime(self) -> RuntimeCheck:
        try:
            stdout, stderr = await exec_command(self._config.java_path, "--version")
        except BackendExecutionError as e:
            return RuntimeCheck(
                kind=self.kind,
                available=False,
                message=f"Java not found. Please install Java {self._config.min_java_version}: {e}",
            )

        output = (stdout or stderr).strip()
        match = JAVA_VERSION_PATTERN.search(output)
        major = int(match.group(1)) if match else 0
        if major < self._config.min_java_version:
            return RuntimeCheck(
                kind=self.kind,
                available=False,
                version=output,
                message=f"Java {self._config.min_java_version} or higher required",
            )
        return RuntimeCheck(kind=self.kind, available=True, version=output)

    def _get(self, world_id: str) -> ProcessHandle:
        handle = self._handles.get(world_id)
        if handle is None:
            raise WorldNotFoundError(world_id)
        return handle
