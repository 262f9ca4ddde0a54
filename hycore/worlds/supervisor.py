"""
World lifecycle supervisor.

Owns the registry, drives the per-world state machine and delegates the actual
work to the runtime backend selected by each world's ``kind``.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable

from ..config import BackendKind, Settings
from ..errors import (
    BackendExecutionError,
    WorldAlreadyExistsError,
    WorldAlreadyRunningError,
    WorldError,
    WorldNotFoundError,
    WorldNotRunningError,
)
from ..events import (
    EventDispatcher,
    WorldOutputClassifiedEvent,
    WorldStatusChangedEvent,
)
from ..log_broadcast import (
    CaptureSession,
    ExitMessage,
    LogBroadcast,
    OutputMessage,
    StartupMessage,
    Subscription,
    SubscriptionError,
)
from ..logger import logger
from ..models import (
    BackendStatus,
    LogEvent,
    WorldSnapshot,
    WorldSpec,
    WorldStatus,
)
from ..runtime import RuntimeBackend, StopResult, create_backends, validate_tail
from .registry import WorldRecord, WorldRegistry


@dataclass(frozen=True)
class StreamEvent:
    """One server-sent event of a create/start stream."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)


class WorldSupervisor:
    def __init__(
        self,
        registry: WorldRegistry,
        backends: dict[BackendKind, RuntimeBackend],
        broadcast: LogBroadcast,
        dispatcher: EventDispatcher,
        *,
        stop_timeout: float = 30.0,
        exit_drain_timeout: float = 2.0,
        auth_command: str = "/auth login device",
    ):
        self.registry = registry
        self.backends = backends
        self.broadcast = broadcast
        self.dispatcher = dispatcher
        self.stop_timeout = stop_timeout
        self._exit_drain_timeout = exit_drain_timeout
        self._auth_command = auth_command
        self._background: set[asyncio.Task] = set()

        broadcast.attach(dispatcher)

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorldSupervisor":
        return cls(
            WorldRegistry(log_buffer_size=settings.log_buffer_size),
            create_backends(settings),
            LogBroadcast(subscriber_queue_size=settings.subscriber_queue_size),
            EventDispatcher(),
            stop_timeout=settings.stop_timeout,
            exit_drain_timeout=settings.exit_drain_timeout,
            auth_command=settings.process.auth_command,
        )

    def backend_for(self, kind: BackendKind) -> RuntimeBackend:
        try:
            return self.backends[kind]
        except KeyError:
            raise ValueError(f"No backend configured for kind '{kind.value}'")

    # Lifecycle operations

    async def create(self, spec: WorldSpec) -> WorldSnapshot:
        backend = self.backend_for(spec.kind)
        async with self.registry.lock(spec.id):
            if spec.id in self.registry:
                raise WorldAlreadyExistsError(spec.id)

            record = self.registry.new_record(spec, WorldStatus.ABSENT)
            record.handle = backend.handle_for(spec)
            self.registry.add(record)
            await self._transition(record, WorldStatus.CREATING)

            try:
                record.handle = await backend.create(spec)
            except BackendExecutionError as e:
                await self._discard(record)
                raise e.with_context(f"create world '{spec.id}'") from e
            except BaseException:
                await self._discard(record)
                raise

            await self._transition(record, WorldStatus.CREATED)
            return record.snapshot()

    async def start(self, world_id: str) -> WorldSnapshot:
        """
        Start a created or stopped world.

        Returns once the backend accepted the start; the world is ``starting``
        until its output or the backend confirms it is running.

        Raises:
            WorldNotFoundError: If the world does not exist
            WorldAlreadyRunningError: If the world is already active
            BackendExecutionError: If the backend failed to start it
        """
        async with self.registry.lock(world_id):
            record = self.registry.get(world_id)
            if record.status.is_active:
                raise WorldAlreadyRunningError(world_id)

            backend = self.backend_for(record.kind)
            await self._detach_capture(record)
            record.exit_code = None
            await self._transition(record, WorldStatus.STARTING)

            try:
                await backend.start(record.handle)
            except BackendExecutionError as e:
                await self._transition(record, WorldStatus.ERROR)
                raise e.with_context(f"start world '{world_id}'") from e
            except WorldAlreadyRunningError:
                # running behind our back, adopt it
                logger.warning(f"World '{world_id}' was already running in its backend")
            except Exception:
                await self._transition(record, WorldStatus.ERROR)
                raise

            record.started_at = datetime.now(timezone.utc)
            self._attach_capture(record, backend)
            return record.snapshot()

    async def stop(self, world_id: str, graceful: bool = True) -> WorldSnapshot:
        """
        Stop a running world.

        A graceful stop that does not finish within ``stop_timeout`` is
        completed by forced termination, so this always ends in ``stopped``.

        Raises:
            WorldNotFoundError: If the world does not exist
            WorldNotRunningError: If the world is not active
        """
        async with self.registry.lock(world_id):
            record = self.registry.get(world_id)
            if not record.status.is_active:
                raise WorldNotRunningError(world_id)

            result = await self._stop_record(record, graceful)
            exit_code = (
                result.exit_code if result.exit_code is not None else record.exit_code
            )
            await self._transition(record, WorldStatus.STOPPED, exit_code)
            return record.snapshot()

    async def _stop_record(self, record: WorldRecord, graceful: bool) -> StopResult:
        backend = self.backend_for(record.kind)
        await self._transition(record, WorldStatus.STOPPING)
        try:
            result = await backend.stop(record.handle, graceful, self.stop_timeout)
        except WorldNotRunningError:
            # exited between our check and the backend call
            result = StopResult(graceful=graceful, exit_code=record.exit_code)
        except WorldNotFoundError:
            # removed outside the agent, nothing left to stop
            logger.warning(f"World '{record.id}' vanished from its backend")
            await self._detach_capture(record)
            return StopResult(graceful=False, exit_code=record.exit_code)
        except BackendExecutionError as e:
            await self._detach_capture(record)
            await self._transition(record, WorldStatus.ERROR)
            raise e.with_context(f"stop world '{record.id}'") from e

        if graceful and not result.graceful:
            logger.warning(f"World '{record.id}' had to be killed")
        await self._finish_capture(record)
        return result

    async def delete(self, world_id: str) -> None:
        """Stop the world if it is active, then remove it from backend and registry."""
        async with self.registry.lock(world_id):
            record = self.registry.get(world_id)
            backend = self.backend_for(record.kind)

            if record.status.is_active:
                result = await self._stop_record(record, graceful=True)
                await self._transition(record, WorldStatus.STOPPED, result.exit_code)
            await self._detach_capture(record)

            try:
                await backend.remove(record.handle)
            except WorldNotFoundError:
                logger.warning(f"World '{world_id}' was already gone from its backend")
            except BackendExecutionError as e:
                await self._transition(record, WorldStatus.ERROR)
                raise e.with_context(f"delete world '{world_id}'") from e

            await self._discard(record)

    async def send_command(self, world_id: str, command: str) -> None:
        command = command.strip()
        if not command:
            raise ValueError("command must be a non-empty string")
        if "\n" in command or "\r" in command:
            raise ValueError("command must be a single line")

        record = self.registry.get(world_id)
        if not record.status.is_up:
            raise WorldNotRunningError(world_id)

        await self.backend_for(record.kind).send_input(record.handle, command)
        logger.info(f"Sent command to '{world_id}': {command}")

    async def authenticate(self, world_id: str) -> None:
        """Ask the server to start the device authentication flow."""
        await self.send_command(world_id, self._auth_command)

    # Reads

    def status(self, world_id: str) -> WorldSnapshot:
        return self.registry.snapshot(world_id)

    def list(self) -> list[WorldSnapshot]:
        return self.registry.list()

    async def tail_logs(self, world_id: str, lines: int = 100) -> str:
        validate_tail(lines)
        record = self.registry.get(world_id)
        if record.log_buffer:
            return "\n".join(event.text for event in list(record.log_buffer)[-lines:])
        if record.status in (WorldStatus.CREATING, WorldStatus.ABSENT):
            return ""

        # nothing captured yet in this agent's lifetime, ask the backend
        try:
            return await self.backend_for(record.kind).tail_logs(record.handle, lines)
        except WorldNotFoundError:
            return ""

    def subscribe(self, world_id: str, tail: int = 0) -> Subscription:
        """
        Subscribe to a world's console output.

        The subscriber first receives up to ``tail`` buffered lines, then live
        lines. For a stopped or failed world it receives the tail and a final
        event, then the subscription ends.
        """
        if tail < 0:
            raise ValueError("tail must not be negative")
        record = self.registry.get(world_id)
        return self._subscribe(record, tail, closed=record.status.is_terminal)

    def _subscribe(self, record: WorldRecord, tail: int, closed: bool) -> Subscription:
        backlog = list(record.log_buffer)[-tail:] if tail else []
        closed_reason = None
        if closed:
            closed_reason = _describe_status(record)
        return self.broadcast.subscribe(record.id, backlog, closed_reason)

    async def follow_logs(self, world_id: str, tail: int = 0) -> AsyncIterator[LogEvent]:
        subscription = self.subscribe(world_id, tail)
        try:
            async for event in subscription:
                yield event
        finally:
            subscription.cancel()

    async def wait_until_running(
        self, world_id: str, timeout: float | None = None
    ) -> WorldSnapshot:
        """
        Wait for the world to reach ``running`` or ``authenticated``.

        Raises:
            TimeoutError: If it does not get there in time
            WorldNotRunningError: If it stops or fails instead
            WorldNotFoundError: If it does not exist or is deleted meanwhile
        """
        record = self.registry.get(world_id)

        def settled() -> bool:
            return record.status.is_up or not record.status.is_active

        async def wait() -> None:
            async with record.status_changed:
                await record.status_changed.wait_for(settled)

        if not settled():
            await asyncio.wait_for(wait(), timeout)

        if record.status.is_up:
            return record.snapshot()
        if record.status == WorldStatus.ABSENT:
            raise WorldNotFoundError(world_id)
        raise WorldNotRunningError(
            world_id, f"World '{world_id}' is {record.status.value}, not running"
        )

    # Streams

    async def create_with_stream(self, spec: WorldSpec) -> AsyncIterator[StreamEvent]:
        """
        Create and start a world, reporting progress and then its console.

        Closing the stream does not abort the create or start in flight.
        """
        yield StreamEvent("status", {"status": "creating", "id": spec.id})
        try:
            snapshot = await self._detached(self.create(spec))
        except Exception as e:
            yield _error_event(e)
            return
        yield StreamEvent(
            "status", {"status": "created", "world": snapshot.model_dump(mode="json")}
        )

        async for event in self.start_with_stream(spec.id):
            yield event

    async def start_with_stream(
        self, world_id: str, tail: int = 0
    ) -> AsyncIterator[StreamEvent]:
        yield StreamEvent("status", {"status": "starting", "id": world_id})
        try:
            record = self.registry.get(world_id)
        except WorldNotFoundError as e:
            yield _error_event(e)
            return

        # subscribe first so no line printed during startup is missed
        subscription = self._subscribe(record, tail, closed=False)
        try:
            try:
                snapshot = await self._detached(self.start(world_id))
            except Exception as e:
                yield _error_event(e)
                return
            yield StreamEvent(
                "status",
                {"status": "started", "world": snapshot.model_dump(mode="json")},
            )

            try:
                async for event in subscription:
                    yield StreamEvent("log", event.to_message())
            except SubscriptionError as e:
                yield _error_event(e)
        finally:
            subscription.cancel()

    async def _detached(self, operation: Awaitable[Any]) -> Any:
        """Run an operation in its own task so a cancelled caller leaves it running."""
        task = asyncio.ensure_future(operation)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return await asyncio.shield(task)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, (WorldError, ValueError)):
            logger.error(f"Background operation failed: {error}", exc_info=error)

    # Startup and shutdown

    async def rebuild(self) -> int:
        """
        Register the worlds the backends still host, e.g. after a restart.

        Running worlds get a fresh capture session. Returns the number of
        worlds found.
        """
        found = 0
        for backend in self.backends.values():
            try:
                discovered = await backend.discover()
            except BackendExecutionError as e:
                logger.warning(f"Could not discover {backend.kind.value} worlds: {e}")
                continue

            for world in discovered:
                world_id = world.spec.id
                async with self.registry.lock(world_id):
                    if world_id in self.registry:
                        logger.warning(f"World '{world_id}' discovered twice, skipping")
                        continue

                    status = _status_from_backend(world.status, world.exit_code)
                    record = self.registry.new_record(world.spec, status)
                    record.handle = world.handle
                    record.exit_code = world.exit_code
                    self.registry.add(record)
                    if status.is_active:
                        record.started_at = datetime.now(timezone.utc)
                        self._attach_capture(record, backend)
                    found += 1
                    logger.info(f"Discovered world '{world_id}' ({status.value})")
        return found

    async def shutdown(self) -> None:
        """
        Detach from every world.

        Worlds whose backend outlives the agent keep running; the others are
        stopped since nothing could find them again.
        """
        for record in self.registry.records():
            backend = self.backends.get(record.kind)
            if backend is not None and not backend.persistent and record.status.is_active:
                try:
                    await self.stop(record.id)
                except (WorldError, BackendExecutionError) as e:
                    logger.error(f"Failed to stop world '{record.id}' on shutdown: {e}")
            await self._detach_capture(record)

        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # Capture and the per-world control loop

    def _attach_capture(self, record: WorldRecord, backend: RuntimeBackend) -> None:
        session = CaptureSession(
            record.id,
            backend,
            record.handle,
            drain_timeout=self._exit_drain_timeout,
        )
        record.session = session
        session.start()
        record.control_task = asyncio.create_task(self._control_loop(record, session))

    async def _finish_capture(self, record: WorldRecord) -> None:
        """Let the control loop consume the exit, then drop the session."""
        task = record.control_task
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=self._exit_drain_timeout + 1.0)
        await self._detach_capture(record)

    async def _detach_capture(self, record: WorldRecord) -> None:
        session, task = record.session, record.control_task
        record.session = None
        record.control_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if session is not None:
            await session.close()

    async def _control_loop(self, record: WorldRecord, session: CaptureSession) -> None:
        while True:
            message = await session.messages.get()
            if record.session is not session:
                return
            try:
                if isinstance(message, OutputMessage):
                    await self._on_output(record, message)
                elif isinstance(message, StartupMessage):
                    await self._confirm(record, message.status)
                elif isinstance(message, ExitMessage):
                    await self._on_exit(record, message.exit_code)
                    return
            except Exception as e:
                logger.error(
                    f"Control loop for '{record.id}' failed on {message!r}: {e}",
                    exc_info=True,
                )

    async def _on_output(self, record: WorldRecord, message: OutputMessage) -> None:
        record.log_buffer.append(message.event)
        self.broadcast.publish(record.id, message.event)
        if message.status is None:
            return

        await self.dispatcher.dispatch_world_output_classified(
            WorldOutputClassifiedEvent(
                world_id=record.id, status=message.status, line=message.event.text
            )
        )
        await self._confirm(record, message.status)

    async def _confirm(self, record: WorldRecord, status: WorldStatus) -> None:
        if record.status == WorldStatus.STARTING and status in (
            WorldStatus.RUNNING,
            WorldStatus.AUTHENTICATED,
        ):
            await self._transition(record, WorldStatus.RUNNING)
        if record.status == WorldStatus.RUNNING and status == WorldStatus.AUTHENTICATED:
            await self._transition(record, WorldStatus.AUTHENTICATED)

    async def _on_exit(self, record: WorldRecord, exit_code: int | None) -> None:
        record.exit_code = exit_code
        if record.status == WorldStatus.STOPPING:
            # the stop operation finishes the transition
            return
        if not record.status.is_active:
            return

        logger.info(f"World '{record.id}' exited on its own with code {exit_code}")
        status = WorldStatus.STOPPED if exit_code == 0 else WorldStatus.ERROR
        await self._transition(record, status, exit_code)

    async def _transition(
        self, record: WorldRecord, status: WorldStatus, exit_code: int | None = None
    ) -> None:
        previous = record.status
        if previous == status:
            return
        record.status = status
        if exit_code is not None:
            record.exit_code = exit_code
        logger.info(f"World '{record.id}': {previous.value} -> {status.value}")

        async with record.status_changed:
            record.status_changed.notify_all()
        await self.dispatcher.dispatch_world_status_changed(
            WorldStatusChangedEvent(
                world_id=record.id,
                previous=previous,
                status=status,
                exit_code=record.exit_code if status.is_terminal else None,
            )
        )

    async def _discard(self, record: WorldRecord) -> None:
        self.registry.remove(record.id)
        await self._transition(record, WorldStatus.ABSENT)


def _status_from_backend(status: BackendStatus, exit_code: int | None) -> WorldStatus:
    if status.is_running:
        return WorldStatus.RUNNING
    if status == BackendStatus.CREATED:
        return WorldStatus.CREATED
    if status == BackendStatus.EXITED and exit_code == 0:
        return WorldStatus.STOPPED
    return WorldStatus.ERROR


def _describe_status(record: WorldRecord) -> str:
    if record.exit_code is not None:
        return f"World '{record.id}' {record.status.value} (exit code {record.exit_code})"
    return f"World '{record.id}' {record.status.value}"


def _error_event(error: Exception) -> StreamEvent:
    return StreamEvent(
        "error",
        {
            "message": str(error),
            "code": getattr(error, "code", "INTERNAL_ERROR"),
        },
    )
