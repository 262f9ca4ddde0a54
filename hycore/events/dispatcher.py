"""Event dispatcher - dispatches typed events to registered handlers.

This is a simple event system without persistence.
Each event type has its own registration and dispatch method.
"""

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, TypeVar, Union

from ..logger import logger
from .base import BaseEvent, WorldOutputClassifiedEvent, WorldStatusChangedEvent
from .types import EventType

EventT = TypeVar("EventT", bound=BaseEvent)

# Handlers may be plain functions or coroutine functions
EventHandler = Union[Callable[[EventT], None], Callable[[EventT], Awaitable[None]]]


class EventDispatcher:
    """Dispatches events to registered handlers.

    Async handlers run concurrently, sync handlers are called inline so they
    observe the event before dispatch returns. A failing handler is logged and
    never affects the others or the dispatching caller.
    """

    def __init__(self):
        self._handlers: Dict[EventType, List[Callable]] = {
            event_type: [] for event_type in EventType
        }

    def on_world_status_changed(
        self, handler: EventHandler[WorldStatusChangedEvent]
    ) -> None:
        """Register handler for world status transitions."""
        self._handlers[EventType.WORLD_STATUS_CHANGED].append(handler)

    def on_world_output_classified(
        self, handler: EventHandler[WorldOutputClassifiedEvent]
    ) -> None:
        """Register handler for classified console lines."""
        self._handlers[EventType.WORLD_OUTPUT_CLASSIFIED].append(handler)

    async def dispatch_world_status_changed(
        self, event: WorldStatusChangedEvent
    ) -> None:
        await self._dispatch_event(event)

    async def dispatch_world_output_classified(
        self, event: WorldOutputClassifiedEvent
    ) -> None:
        await self._dispatch_event(event)

    async def _dispatch_event(self, event: BaseEvent) -> None:
        handlers = self._handlers.get(event.event_type, [])

        if not handlers:
            logger.debug(f"No handlers registered for event: {event.event_type}")
            return

        tasks = []
        task_handlers = []
        for handler in handlers:
            if inspect.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(event)))
                task_handlers.append(handler)
                continue
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Handler {handler.__name__} failed for event {event.event_type}: {e}",
                    exc_info=True,
                )

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for handler, result in zip(task_handlers, results):
                if isinstance(result, Exception):
                    logger.error(
                        f"Handler {handler.__name__} failed for event {event.event_type}: {result}",
                        exc_info=result,
                    )
