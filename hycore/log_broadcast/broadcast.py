"""Fans out captured log lines to live subscribers."""

import asyncio
from typing import Iterable

from ..events import EventDispatcher, WorldStatusChangedEvent
from ..logger import log_exception, logger
from ..models import LogEvent, StreamTag, WorldStatus


class SubscriptionError(Exception):
    pass


class SubscriberOverflowError(SubscriptionError):
    """The subscriber fell too far behind and was dropped."""


_CLOSED = object()


class Subscription:
    """A single consumer of a world's log stream.

    Iterate it to receive events. Iteration ends after the terminal event, or
    raises the error the subscription was closed with. ``cancel`` only
    detaches this subscriber.
    """

    def __init__(self, world_id: str, broadcast: "LogBroadcast", limit: int):
        self.world_id = world_id
        self.error: Exception | None = None
        self._broadcast = broadcast
        self._limit = limit
        self._queue: asyncio.Queue = asyncio.Queue()
        self._backlog = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: LogEvent) -> bool:
        """Queue an event without blocking. False if the subscriber is full."""
        if self._closed:
            return False
        if self._queue.qsize() - self._backlog >= self._limit:
            return False
        self._queue.put_nowait(event)
        return True

    def preload(self, events: Iterable[LogEvent]) -> None:
        """Queue the tail. It does not count against the live event limit."""
        for event in events:
            self._queue.put_nowait(event)
            self._backlog += 1

    def close(
        self, error: Exception | None = None, final_event: LogEvent | None = None
    ) -> None:
        if self._closed:
            return
        self._closed = True
        self.error = error
        if final_event is not None:
            self._queue.put_nowait(final_event)
        self._queue.put_nowait(_CLOSED)

    def cancel(self) -> None:
        self._broadcast.release(self)
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> LogEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            # keep the sentinel so repeated iteration also stops
            self._queue.put_nowait(_CLOSED)
            if self.error is not None:
                raise self.error
            raise StopAsyncIteration
        if self._backlog:
            self._backlog -= 1
        return item


class LogBroadcast:
    """
    Per-world fan-out of log events.

    A world's channel is created by its first subscriber and dropped when the
    last one leaves. Publishing never blocks the caller: a subscriber whose
    queue is full is closed with ``SubscriberOverflowError`` and the others
    keep receiving.
    """

    def __init__(self, subscriber_queue_size: int = 1000):
        self._subscriber_queue_size = subscriber_queue_size
        self._channels: dict[str, set[Subscription]] = {}

    def attach(self, dispatcher: EventDispatcher) -> None:
        """Release subscribers when their world stops, fails or is deleted."""
        dispatcher.on_world_status_changed(self._on_status_changed)

    def subscribe(
        self,
        world_id: str,
        tail: Iterable[LogEvent] = (),
        closed_reason: str | None = None,
    ) -> Subscription:
        """
        Register a subscriber that first receives ``tail``.

        With ``closed_reason`` the subscription is not registered: it yields
        the tail and a terminal event, then ends.
        """
        subscription = Subscription(world_id, self, self._subscriber_queue_size)
        subscription.preload(tail)

        if closed_reason is not None:
            subscription.close(final_event=_terminal_event(closed_reason))
            return subscription

        self._channels.setdefault(world_id, set()).add(subscription)
        logger.debug(
            f"Subscriber added for {world_id}, {self.subscriber_count(world_id)} active"
        )
        return subscription

    def release(self, subscription: Subscription) -> None:
        channel = self._channels.get(subscription.world_id)
        if channel is None:
            return
        channel.discard(subscription)
        if not channel:
            del self._channels[subscription.world_id]
            logger.debug(f"Last subscriber left {subscription.world_id}")

    def publish(self, world_id: str, event: LogEvent) -> None:
        channel = self._channels.get(world_id)
        if not channel:
            return
        for subscription in list(channel):
            if subscription.deliver(event):
                continue
            logger.warning(f"Dropping slow log subscriber for {world_id}")
            self.release(subscription)
            subscription.close(
                SubscriberOverflowError(
                    f"Log subscriber for world '{world_id}' fell behind"
                )
            )

    def terminate(self, world_id: str, reason: str) -> None:
        """Send a terminal event to every subscriber of a world and close them."""
        channel = self._channels.pop(world_id, None)
        if not channel:
            return
        for subscription in channel:
            subscription.close(final_event=_terminal_event(reason))
        logger.info(f"Closed {len(channel)} log subscriber(s) for {world_id}")

    def subscriber_count(self, world_id: str) -> int:
        return len(self._channels.get(world_id, ()))

    @log_exception("log broadcast status handler")
    def _on_status_changed(self, event: WorldStatusChangedEvent) -> None:
        if event.status.is_terminal or event.status == WorldStatus.ABSENT:
            self.terminate(event.world_id, describe_terminal(event))


def describe_terminal(event: WorldStatusChangedEvent) -> str:
    if event.status == WorldStatus.ABSENT:
        return f"World '{event.world_id}' was deleted"
    if event.exit_code is not None:
        return f"World '{event.world_id}' {event.status.value} (exit code {event.exit_code})"
    return f"World '{event.world_id}' {event.status.value}"


def _terminal_event(reason: str) -> LogEvent:
    return LogEvent(stream=StreamTag.INFO, text=reason)
