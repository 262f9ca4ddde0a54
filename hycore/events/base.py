"""Base event model for all events."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from ..models import WorldStatus
from .types import EventType


class BaseEvent(BaseModel):
    """Base class for all events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorldStatusChangedEvent(BaseEvent):
    """Fired after the supervisor moved a world to a new status."""

    event_type: EventType = EventType.WORLD_STATUS_CHANGED
    world_id: str = Field(..., description="World identifier")
    previous: WorldStatus = Field(..., description="Status before the transition")
    status: WorldStatus = Field(..., description="Status after the transition")
    exit_code: int | None = Field(default=None, description="Exit code, if exited")


class WorldOutputClassifiedEvent(BaseEvent):
    """Fired when a console line matched one of the status patterns."""

    event_type: EventType = EventType.WORLD_OUTPUT_CLASSIFIED
    world_id: str = Field(..., description="World identifier")
    status: WorldStatus = Field(..., description="Status the line points to")
    line: str = Field(..., description="Matched console line")
