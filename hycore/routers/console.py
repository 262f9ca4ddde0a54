from fastapi import APIRouter, Query, WebSocket

from ..dependencies import Supervisor
from ..websocket.console import ConsoleWebSocketHandler

router = APIRouter(
    prefix="/worlds",
    tags=["console"],
)


@router.websocket("/{world_id}/console")
async def console_websocket(
    websocket: WebSocket,
    world_id: str,
    supervisor: Supervisor,
    tail: int = Query(default=100, ge=0, le=1000),
):
    handler = ConsoleWebSocketHandler(websocket, supervisor)
    await handler.handle_connection(world_id, tail)
