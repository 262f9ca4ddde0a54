"""
Runtime backends hosting worlds.

The supervisor only talks to ``RuntimeBackend``; which variant owns a world
is fixed by the world's ``kind`` when it is created.
"""

from ..config import BackendKind, Settings
from .base import (
    MAX_TAIL_LINES,
    BackendHandle,
    DiscoveredWorld,
    RuntimeBackend,
    RuntimeCheck,
    StopResult,
    validate_tail,
)
from .docker import ContainerBackend, ContainerHandle
from .process import ProcessBackend, ProcessHandle


def create_backends(settings: Settings) -> dict[BackendKind, RuntimeBackend]:
    return {
        BackendKind.CONTAINER: ContainerBackend(
            settings.worlds_path,
            settings.docker_image,
            settings.container,
            poll_interval=settings.status_poll_interval,
        ),
        BackendKind.PROCESS: ProcessBackend(settings.worlds_path, settings.process),
    }


__all__ = [
    "MAX_TAIL_LINES",
    "BackendHandle",
    "ContainerBackend",
    "ContainerHandle",
    "DiscoveredWorld",
    "ProcessBackend",
    "ProcessHandle",
    "RuntimeBackend",
    "RuntimeCheck",
    "StopResult",
    "create_backends",
    "validate_tail",
]
