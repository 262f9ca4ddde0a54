"""Event type definitions."""

from enum import Enum


class EventType(str, Enum):
    """All event types in the system."""

    # World lifecycle events
    WORLD_STATUS_CHANGED = "world.status_changed"

    # Console events
    WORLD_OUTPUT_CLASSIFIED = "world.output_classified"
