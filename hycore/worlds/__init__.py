from .registry import KeyedLock, WorldRecord, WorldRegistry
from .supervisor import StreamEvent, WorldSupervisor

__all__ = [
    "KeyedLock",
    "StreamEvent",
    "WorldRecord",
    "WorldRegistry",
    "WorldSupervisor",
]
