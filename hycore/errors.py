"""
World lifecycle errors.

Expected, caller-recoverable conditions carry a symbolic ``code`` and the HTTP
status the API layer answers with. Everything else is a generic failure.
"""


class WorldError(Exception):
    code: str = "WORLD_ERROR"
    status_code: int = 500

    def __init__(self, world_id: str, message: str | None = None):
        self.world_id = world_id
        super().__init__(message or f"World '{world_id}' error")


class WorldNotFoundError(WorldError):
    code = "WORLD_NOT_FOUND"
    status_code = 404

    def __init__(self, world_id: str, message: str | None = None):
        super().__init__(world_id, message or f"World '{world_id}' does not exist")


class WorldConflictError(WorldError):
    code = "WORLD_CONFLICT"
    status_code = 409


class WorldAlreadyExistsError(WorldConflictError):
    code = "WORLD_ALREADY_EXISTS"

    def __init__(self, world_id: str, message: str | None = None):
        super().__init__(world_id, message or f"World '{world_id}' already exists")


class WorldAlreadyRunningError(WorldConflictError):
    code = "WORLD_ALREADY_RUNNING"

    def __init__(self, world_id: str, message: str | None = None):
        super().__init__(
            world_id, message or f"World '{world_id}' is already running"
        )


class WorldNotRunningError(WorldConflictError):
    code = "WORLD_NOT_RUNNING"

    def __init__(self, world_id: str, message: str | None = None):
        super().__init__(world_id, message or f"World '{world_id}' is not running")


class BackendExecutionError(RuntimeError):
    """A docker or java invocation failed. Keeps the captured output."""

    def __init__(
        self,
        command: str,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        context: str = "",
    ):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.context = context
        super().__init__(self._format())

    def _format(self) -> str:
        message = f"Failed to exec command: {self.command}"
        if self.returncode is not None:
            message += f" (exit code {self.returncode})"
        if self.context:
            message = f"{self.context}: {message}"
        detail = (self.stderr or self.stdout).strip()
        if detail:
            message += f"\n{detail}"
        return message

    def with_context(self, context: str) -> "BackendExecutionError":
        return BackendExecutionError(
            self.command, self.returncode, self.stdout, self.stderr, context
        )


class StopTimeoutError(TimeoutError):
    """Graceful stop exceeded its timeout. Recovered by forced termination."""

    def __init__(self, world_id: str, timeout: float):
        self.world_id = world_id
        self.timeout = timeout
        super().__init__(
            f"World '{world_id}' did not stop within {timeout:g}s, killing it"
        )
