"""
Server-sent event streams of world consoles.

Every stream closes when the world stops, fails or is deleted, or when the
client goes away. Closing a create or start stream never aborts the operation.
"""

from typing import AsyncIterator

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from ..dependencies import Supervisor
from ..log_broadcast import Subscription, SubscriptionError
from ..logger import logger
from ..worlds import StreamEvent
from .utils import SSE_HEADERS, format_sse
from .worlds import CreateWorldRequest

router = APIRouter(
    prefix="/worlds",
    tags=["streams"],
)


async def _log_stream(subscription: Subscription) -> AsyncIterator[str]:
    logger.debug(f"Log stream opened for {subscription.world_id}")
    try:
        yield format_sse("connected", {"id": subscription.world_id})
        async for event in subscription:
            yield format_sse("log", event.to_message())
    except SubscriptionError as e:
        yield format_sse("error", {"message": str(e)})
    finally:
        subscription.cancel()
        logger.debug(f"Log stream closed for {subscription.world_id}")


async def _operation_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for item in events:
        yield format_sse(item.event, item.data)


@router.get("/{world_id}/logs/stream")
async def stream_world_logs(
    world_id: str,
    supervisor: Supervisor,
    tail: int = Query(default=100, ge=0, le=1000),
) -> StreamingResponse:
    # subscribe before responding so an unknown world is still a plain 404
    subscription = supervisor.subscribe(world_id, tail)
    return StreamingResponse(
        _log_stream(subscription),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/stream")
async def create_world_with_stream(
    body: CreateWorldRequest, supervisor: Supervisor
) -> StreamingResponse:
    return StreamingResponse(
        _operation_stream(supervisor.create_with_stream(body.to_spec())),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{world_id}/start/stream")
async def start_world_with_stream(
    world_id: str,
    supervisor: Supervisor,
    tail: int = Query(default=0, ge=0, le=1000),
) -> StreamingResponse:
    return StreamingResponse(
        _operation_stream(supervisor.start_with_stream(world_id, tail)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
