import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import BackendKind

WORLD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
MEMORY_PATTERN = re.compile(r"^[1-9][0-9]*[KkMmGg]?$")


class WorldStatus(str, Enum):
    """Supervisor view of a world, in lifecycle order"""

    ABSENT = "absent"
    CREATING = "creating"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    AUTHENTICATED = "authenticated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """A backend process or container is (or may be) alive"""
        return self in ACTIVE_STATUSES

    @property
    def is_up(self) -> bool:
        return self in (WorldStatus.RUNNING, WorldStatus.AUTHENTICATED)

    @property
    def is_terminal(self) -> bool:
        return self in (WorldStatus.STOPPED, WorldStatus.ERROR)


ACTIVE_STATUSES = frozenset(
    {
        WorldStatus.STARTING,
        WorldStatus.RUNNING,
        WorldStatus.AUTHENTICATED,
        WorldStatus.STOPPING,
    }
)


class BackendStatus(str, Enum):
    """State reported by the backend itself (docker State.Status or process)"""

    NOT_FOUND = "not_found"
    CREATED = "created"
    RUNNING = "running"
    RESTARTING = "restarting"
    PAUSED = "paused"
    EXITED = "exited"
    DEAD = "dead"

    @classmethod
    def parse(cls, value: str) -> "BackendStatus":
        value = value.strip().strip("'\"").lower()
        if value == "removing":
            return cls.DEAD
        try:
            return cls(value)
        except ValueError:
            return cls.NOT_FOUND

    @property
    def is_running(self) -> bool:
        return self in (BackendStatus.RUNNING, BackendStatus.RESTARTING)


class StreamTag(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"


class LogEvent(BaseModel):
    """One line of console output, immutable once emitted."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stream: StreamTag = StreamTag.STDOUT
    text: str

    def to_message(self) -> dict:
        """Shape sent to API clients"""
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.stream.value,
            "message": self.text,
        }


class WorldSpec(BaseModel):
    """Configuration snapshot taken when a world is created."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: BackendKind = BackendKind.CONTAINER
    memory: str
    cpus: int = Field(ge=1)
    port: int = Field(ge=1024, le=65535)

    server_path: Path | None = None
    assets_path: Path | None = None
    auth_mode: str = "authenticated"
    aot_cache: bool = True
    disable_sentry: bool = False
    backup: bool = False
    backup_dir: Path | None = None
    backup_frequency: int = Field(default=30, ge=1)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id must be a non-empty string")
        if not WORLD_ID_PATTERN.match(value):
            raise ValueError(
                "id may only contain letters, digits, '_', '.' and '-'"
            )
        return value

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("memory must be a non-empty string")
        if not MEMORY_PATTERN.match(value):
            raise ValueError("memory must look like 512M, 4G or a byte count")
        return value

    @field_validator("auth_mode")
    @classmethod
    def validate_auth_mode(cls, value: str) -> str:
        if value not in ("authenticated", "offline"):
            raise ValueError("auth_mode must be 'authenticated' or 'offline'")
        return value


class WorldSnapshot(BaseModel):
    """Point-in-time copy of a registry record handed out to callers."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: BackendKind
    status: WorldStatus
    port: int
    memory: str
    cpus: int
    created_at: datetime
    started_at: datetime | None = None
    exit_code: int | None = None
    uptime_seconds: float | None = None
    log_lines: int = 0
