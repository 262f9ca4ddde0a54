"""
Capture pipeline for one running world.

Backend callbacks (output lines, engine-reported startup, process exit) are
turned into messages on a single queue. The supervisor consumes that queue
from one control loop per world, so status and log buffer are only ever
mutated in one place.
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..logger import logger
from ..models import LogEvent, StreamTag, WorldStatus

if TYPE_CHECKING:
    from ..runtime.base import RuntimeBackend


@dataclass(frozen=True)
class OutputMessage:
    event: LogEvent
    status: WorldStatus | None = None


@dataclass(frozen=True)
class StartupMessage:
    status: WorldStatus


@dataclass(frozen=True)
class ExitMessage:
    exit_code: int | None


CaptureMessage = OutputMessage | StartupMessage | ExitMessage


class CaptureSession:
    """Pumps a backend handle's signals into ``messages`` until it exits."""

    def __init__(
        self,
        world_id: str,
        backend: "RuntimeBackend",
        handle: Any,
        tail: int = 0,
        drain_timeout: float = 2.0,
    ):
        self.world_id = world_id
        self.messages: asyncio.Queue[CaptureMessage] = asyncio.Queue()
        self._backend = backend
        self._handle = handle
        self._tail = tail
        self._drain_timeout = drain_timeout
        self._output_task: asyncio.Task | None = None
        self._startup_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None

    def start(self) -> None:
        self._output_task = asyncio.create_task(self._pump_output())
        self._startup_task = asyncio.create_task(self._pump_startup())
        self._exit_task = asyncio.create_task(self._pump_exit())
        logger.debug(f"Capture started for {self.world_id}")

    async def close(self) -> None:
        """Stop pumping. Never touches the backend resource itself."""
        tasks = [
            task
            for task in (self._output_task, self._startup_task, self._exit_task)
            if task is not None and task is not asyncio.current_task()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _pump_output(self) -> None:
        classifier = self._backend.classifier
        try:
            async for event in self._backend.follow_logs(self._handle, self._tail):
                status = classifier.classify(event.text)
                await self.messages.put(OutputMessage(event, status))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Log capture failed for {self.world_id}: {e}", exc_info=True)
            await self.messages.put(
                OutputMessage(
                    LogEvent(stream=StreamTag.INFO, text=f"Log capture failed: {e}")
                )
            )

    async def _pump_startup(self) -> None:
        try:
            async for status in self._backend.startup_signals(self._handle):
                await self.messages.put(StartupMessage(status))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Startup watch failed for {self.world_id}: {e}", exc_info=True
            )

    async def _pump_exit(self) -> None:
        exit_code: int | None = None
        try:
            exit_code = await self._backend.wait_for_exit(self._handle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Exit watch failed for {self.world_id}: {e}", exc_info=True)

        # let the last lines reach the queue before the exit does
        if self._output_task is not None:
            await asyncio.wait({self._output_task}, timeout=self._drain_timeout)
        if self._startup_task is not None:
            self._startup_task.cancel()

        logger.debug(f"Capture saw exit of {self.world_id} with code {exit_code}")
        await self.messages.put(ExitMessage(exit_code))
