"""
In-memory runtime backend for supervisor, route and console tests.

Worlds are plain records; tests drive their output and exit by hand through
``emit``, ``exit`` and the behaviour flags.
"""

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator

from hycore.config import BackendKind
from hycore.errors import (
    WorldAlreadyExistsError,
    WorldAlreadyRunningError,
    WorldNotFoundError,
    WorldNotRunningError,
)
from hycore.log_broadcast import SubstringClassifier
from hycore.models import BackendStatus, LogEvent, StreamTag, WorldSpec
from hycore.runtime import (
    BackendHandle,
    DiscoveredWorld,
    RuntimeBackend,
    RuntimeCheck,
    StopResult,
    validate_tail,
)

KILLED = 137


@dataclass
class FakeWorld:
    spec: WorldSpec
    running: bool = False
    started: int = 0
    history: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    lines: asyncio.Queue | None = None
    exit: asyncio.Future | None = None


class FakeBackend(RuntimeBackend):
    def __init__(self, kind: BackendKind = BackendKind.PROCESS):
        self.kind = kind
        self.classifier = SubstringClassifier(
            ["Server started"], ["Authentication successful"]
        )
        self.worlds: dict[str, FakeWorld] = {}
        self.discovered: list[DiscoveredWorld] = []

        # behaviour flags
        self.boot_lines = ["Booting world", "Server started"]
        self.exit_after_boot: int | None = None
        self.ignore_graceful_stop = False
        self.create_error: Exception | None = None
        self.start_error: Exception | None = None
        self.create_gate: asyncio.Event | None = None
        self.create_entered = asyncio.Event()

    # helpers for tests

    def emit(self, world_id: str, text: str, stream: StreamTag = StreamTag.STDOUT):
        world = self.worlds[world_id]
        world.history.append(text)
        assert world.lines is not None
        world.lines.put_nowait(LogEvent(stream=stream, text=text))

    def exit(self, world_id: str, exit_code: int) -> None:
        world = self.worlds[world_id]
        world.running = False
        if world.lines is not None:
            world.lines.put_nowait(None)
        if world.exit is not None and not world.exit.done():
            world.exit.set_result(exit_code)

    # RuntimeBackend

    async def exists(self, world_id: str) -> bool:
        return world_id in self.worlds

    async def status_of(self, world_id: str) -> BackendStatus:
        world = self.worlds.get(world_id)
        if world is None:
            return BackendStatus.NOT_FOUND
        if world.running:
            return BackendStatus.RUNNING
        return BackendStatus.EXITED if world.started else BackendStatus.CREATED

    def handle_for(self, spec: WorldSpec) -> BackendHandle:
        return BackendHandle(world_id=spec.id, kind=self.kind)

    async def create(self, spec: WorldSpec) -> BackendHandle:
        self.create_entered.set()
        if self.create_gate is not None:
            await self.create_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        if spec.id in self.worlds:
            raise WorldAlreadyExistsError(spec.id)
        self.worlds[spec.id] = FakeWorld(spec=spec)
        return self.handle_for(spec)

    async def start(self, handle: BackendHandle) -> None:
        world = self._get(handle)
        if self.start_error is not None:
            raise self.start_error
        if world.running:
            raise WorldAlreadyRunningError(handle.world_id)

        world.running = True
        world.started += 1
        world.lines = asyncio.Queue()
        world.exit = asyncio.get_running_loop().create_future()
        for line in self.boot_lines:
            self.emit(handle.world_id, line)
        if self.exit_after_boot is not None:
            self.exit(handle.world_id, self.exit_after_boot)

    async def stop(
        self, handle: BackendHandle, graceful: bool = True, timeout: float = 30.0
    ) -> StopResult:
        world = self._get(handle)
        if not world.running:
            raise WorldNotRunningError(handle.world_id)

        if graceful and not self.ignore_graceful_stop:
            self.emit(handle.world_id, "Shutting down")
            self.exit(handle.world_id, 0)
            return StopResult(graceful=True, exit_code=0)

        if graceful:
            # the stop command is ignored, wait it out like a real server
            await asyncio.sleep(timeout)
        self.exit(handle.world_id, KILLED)
        return StopResult(graceful=False, exit_code=KILLED)

    async def remove(self, handle: BackendHandle) -> None:
        world = self._get(handle)
        if world.running:
            await self.stop(handle)
        del self.worlds[handle.world_id]

    async def tail_logs(self, handle: BackendHandle, n: int) -> str:
        validate_tail(n)
        return "\n".join(self._get(handle).history[-n:])

    async def follow_logs(
        self, handle: BackendHandle, tail: int = 0
    ) -> AsyncIterator[LogEvent]:
        world = self._get(handle)
        assert world.lines is not None
        while True:
            event = await world.lines.get()
            if event is None:
                return
            yield event

    async def send_input(self, handle: BackendHandle, line: str) -> None:
        world = self._get(handle)
        if not world.running:
            raise WorldNotRunningError(handle.world_id)
        world.inputs.append(line)
        self.emit(handle.world_id, f"> {line}")

    async def wait_for_exit(self, handle: BackendHandle) -> int | None:
        world = self._get(handle)
        if world.exit is None:
            return None
        return await world.exit

    async def discover(self) -> list[DiscoveredWorld]:
        return list(self.discovered)

    async def verify_runtime(self) -> RuntimeCheck:
        return RuntimeCheck(kind=self.kind, available=True, version="fake 1.0")

    def _get(self, handle: BackendHandle) -> FakeWorld:
        world = self.worlds.get(handle.world_id)
        if world is None:
            raise WorldNotFoundError(handle.world_id)
        return world
