"""
Event system for hycore.

Decouples the supervisor from the components that react to world lifecycle
changes, such as the log broadcast releasing its subscribers.
"""

from .base import BaseEvent, WorldOutputClassifiedEvent, WorldStatusChangedEvent
from .dispatcher import EventDispatcher
from .types import EventType

__all__ = [
    "BaseEvent",
    "EventDispatcher",
    "EventType",
    "WorldOutputClassifiedEvent",
    "WorldStatusChangedEvent",
]
