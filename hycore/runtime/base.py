from dataclasses import dataclass
from typing import AsyncIterator

from ..config import BackendKind
from ..log_broadcast.classifier import NullClassifier, StatusClassifier
from ..models import BackendStatus, LogEvent, WorldSpec, WorldStatus

MAX_TAIL_LINES = 1000


@dataclass
class BackendHandle:
    """Reference to the live resource behind a world."""

    world_id: str
    kind: BackendKind


@dataclass(frozen=True)
class StopResult:
    graceful: bool
    exit_code: int | None = None


@dataclass(frozen=True)
class DiscoveredWorld:
    """A world found in the backend when the agent starts."""

    spec: WorldSpec
    handle: BackendHandle
    status: BackendStatus
    exit_code: int | None = None


@dataclass(frozen=True)
class RuntimeCheck:
    kind: BackendKind
    available: bool
    version: str = ""
    message: str = ""


def validate_tail(n: int) -> int:
    if not 1 <= n <= MAX_TAIL_LINES:
        raise ValueError(f"lines must be between 1 and {MAX_TAIL_LINES}")
    return n


class RuntimeBackend:
    """
    abstract class for runtime backends

    A backend hosts worlds: it creates, starts, stops and removes the
    underlying resource and exposes its output. It knows nothing about the
    supervisor's state machine; ``status_of`` reports what the backend itself
    sees.
    """

    kind: BackendKind
    classifier: StatusClassifier = NullClassifier()
    # resources outlive the agent and are found again by discover()
    persistent: bool = False

    async def exists(self, world_id: str) -> bool: ...

    async def status_of(self, world_id: str) -> BackendStatus: ...

    def handle_for(self, spec: WorldSpec) -> BackendHandle:
        """Handle for a world that is about to be created."""
        ...

    async def create(self, spec: WorldSpec) -> BackendHandle:
        """
        Raises:
            WorldAlreadyExistsError: If the backend already hosts this id
            BackendExecutionError: If the backend command fails
        """
        ...

    async def start(self, handle: BackendHandle) -> None:
        """
        Raises:
            WorldNotFoundError, WorldAlreadyRunningError, BackendExecutionError
        """
        ...

    async def stop(
        self, handle: BackendHandle, graceful: bool = True, timeout: float = 30.0
    ) -> StopResult:
        """
        Stop the world. A graceful stop that outlives ``timeout`` falls back to
        forced termination and still returns normally.

        Raises:
            WorldNotFoundError, WorldNotRunningError, BackendExecutionError
        """
        ...

    async def remove(self, handle: BackendHandle) -> None:
        """Remove the resource, stopping it first if it is still running."""
        ...

    async def tail_logs(self, handle: BackendHandle, n: int) -> str: ...

    def follow_logs(
        self, handle: BackendHandle, tail: int = 0
    ) -> AsyncIterator[LogEvent]:
        """Last ``tail`` lines, then live lines until the resource exits."""
        ...

    async def send_input(self, handle: BackendHandle, line: str) -> None:
        """
        Raises:
            WorldNotRunningError: If nothing is running to receive the line
        """
        ...

    async def wait_for_exit(self, handle: BackendHandle) -> int | None:
        """Resolve with the exit code once the running resource has exited."""
        ...

    async def startup_signals(
        self, handle: BackendHandle
    ) -> AsyncIterator[WorldStatus]:
        """Status confirmations observed from the backend itself.

        Backends whose only signal is their console output yield nothing and
        rely on ``classifier`` instead.
        """
        return
        yield

    async def discover(self) -> list[DiscoveredWorld]:
        return []

    async def verify_runtime(self) -> RuntimeCheck: ...
