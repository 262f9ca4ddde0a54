"""In-memory registry of known worlds, keyed by id."""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator

from ..errors import WorldNotFoundError
from ..log_broadcast import CaptureSession
from ..models import LogEvent, WorldSnapshot, WorldSpec, WorldStatus
from ..runtime.base import BackendHandle


@dataclass
class WorldRecord:
    spec: WorldSpec
    status: WorldStatus = WorldStatus.CREATING
    handle: BackendHandle | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    exit_code: int | None = None
    log_buffer: deque[LogEvent] = field(default_factory=lambda: deque(maxlen=1000))

    # capture of the current run and the loop consuming it
    session: CaptureSession | None = None
    control_task: asyncio.Task | None = None
    status_changed: asyncio.Condition = field(default_factory=asyncio.Condition)

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def kind(self):
        return self.spec.kind

    def snapshot(self) -> WorldSnapshot:
        uptime = None
        if self.started_at is not None and self.status.is_active:
            uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return WorldSnapshot(
            id=self.id,
            kind=self.kind,
            status=self.status,
            port=self.spec.port,
            memory=self.spec.memory,
            cpus=self.spec.cpus,
            created_at=self.created_at,
            started_at=self.started_at,
            exit_code=self.exit_code,
            uptime_seconds=uptime,
            log_lines=len(self.log_buffer),
        )


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class WorldRegistry:
    """
    Single source of truth for world records.

    Mutating supervisor operations run under ``lock(world_id)``. Readers use
    ``snapshot``/``list`` and never see a half-applied transition because
    transitions never await between check and assignment.
    """

    def __init__(self, log_buffer_size: int = 1000):
        self._records: dict[str, WorldRecord] = {}
        self._locks = KeyedLock()
        self._log_buffer_size = log_buffer_size

    def lock(self, world_id: str):
        return self._locks.hold(world_id)

    def new_record(self, spec: WorldSpec, status: WorldStatus) -> WorldRecord:
        return WorldRecord(
            spec=spec,
            status=status,
            log_buffer=deque(maxlen=self._log_buffer_size),
        )

    def add(self, record: WorldRecord) -> WorldRecord:
        self._records[record.id] = record
        return record

    def remove(self, world_id: str) -> WorldRecord | None:
        return self._records.pop(world_id, None)

    def get(self, world_id: str) -> WorldRecord:
        record = self._records.get(world_id)
        if record is None:
            raise WorldNotFoundError(world_id)
        return record

    def find(self, world_id: str) -> WorldRecord | None:
        return self._records.get(world_id)

    def __contains__(self, world_id: str) -> bool:
        return world_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> list[WorldRecord]:
        return list(self._records.values())

    def snapshot(self, world_id: str) -> WorldSnapshot:
        return self.get(world_id).snapshot()

    def list(self) -> list[WorldSnapshot]:
        return [record.snapshot() for record in self._records.values()]
