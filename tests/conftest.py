import asyncio
import time
from typing import Callable

import pytest

from hycore.config import BackendKind
from hycore.events import EventDispatcher
from hycore.log_broadcast import LogBroadcast
from hycore.models import WorldSpec
from hycore.worlds import WorldRegistry, WorldSupervisor

from .fixtures.fake_backend import FakeBackend

STOP_TIMEOUT = 0.3


def make_spec(world_id: str = "alpha", **overrides) -> WorldSpec:
    values = {
        "id": world_id,
        "kind": BackendKind.PROCESS,
        "memory": "4G",
        "cpus": 2,
        "port": 25565,
    }
    values.update(overrides)
    return WorldSpec(**values)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate holds, failing the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def build_supervisor(backend: FakeBackend) -> WorldSupervisor:
    return WorldSupervisor(
        WorldRegistry(log_buffer_size=100),
        {backend.kind: backend},
        LogBroadcast(subscriber_queue_size=100),
        EventDispatcher(),
        stop_timeout=STOP_TIMEOUT,
        exit_drain_timeout=0.5,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def supervisor(backend):
    supervisor = build_supervisor(backend)
    yield supervisor
    await supervisor.shutdown()


@pytest.fixture
def status_log(supervisor) -> list[tuple[str, str]]:
    """Every (world id, status) transition in order."""
    transitions: list[tuple[str, str]] = []

    def record(event):
        transitions.append((event.world_id, event.status.value))

    supervisor.dispatcher.on_world_status_changed(record)
    return transitions
