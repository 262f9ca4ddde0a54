"""
WebSocket console handler for world management.
Handles real-time log streaming and command execution.
"""

import asyncio
import json
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

from ..errors import WorldError, WorldNotFoundError
from ..log_broadcast import Subscription, SubscriptionError
from ..logger import logger
from ..models import LogEvent
from ..worlds import WorldSupervisor


class ConsoleWebSocketHandler:
    """Handler for a single WebSocket console connection to a world."""

    def __init__(self, websocket: WebSocket, supervisor: WorldSupervisor):
        self.websocket = websocket
        self.supervisor = supervisor
        self.subscription: Optional[Subscription] = None
        self.forward_task: Optional[asyncio.Task] = None

    async def handle_connection(self, world_id: str, tail: int = 100):
        """Handle the WebSocket connection lifecycle."""
        try:
            await self.websocket.accept()

            try:
                self.subscription = self.supervisor.subscribe(world_id, tail)
            except WorldNotFoundError as e:
                await self._send_error(str(e))
                await self.websocket.close()
                return

            self.forward_task = asyncio.create_task(self._forward_logs())
            await self._handle_messages(world_id)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for world {world_id}")
        except Exception as e:
            logger.error(f"Console connection for {world_id} failed: {e}", exc_info=True)
            await self._handle_connection_error(e)
        finally:
            await self._cleanup()

    async def _forward_logs(self):
        """Send the tail, then live lines until the world stops or we leave."""
        assert self.subscription is not None
        try:
            async for event in self.subscription:
                await self._send_log(event)
        except SubscriptionError as e:
            await self._send_error(str(e))
            return
        await self._send_dict({"type": "info", "message": "Log stream ended"})

    async def _handle_messages(self, world_id: str):
        """Handle incoming messages."""
        while True:
            message = await self.websocket.receive_text()
            await self._process_message(world_id, message)

    async def _process_message(self, world_id: str, message: str):
        """Process a single message."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            await self._send_dict({"type": "info", "message": "Malformed message"})
            return

        if not isinstance(data, dict) or not data.get("type"):
            await self._send_dict({"type": "info", "message": "Message has no type"})
            return

        message_type = data.get("type")

        if message_type == "command":
            await self._handle_command(world_id, data)
        elif message_type == "auth":
            await self._run(self.supervisor.authenticate(world_id))
        else:
            await self._send_dict(
                {"type": "info", "message": f"Unknown message type: {message_type}"}
            )

    async def _handle_command(self, world_id: str, data: dict):
        """Handle command execution."""
        command = str(data.get("command", "")).strip()
        if not command:
            return
        await self._run(self.supervisor.send_command(world_id, command))

    async def _run(self, operation):
        try:
            await operation
        except (WorldError, ValueError) as e:
            await self._send_error(str(e))
        except Exception as e:
            logger.error(f"Console operation failed: {e}", exc_info=True)
            await self._send_error(str(e))

    async def _send_log(self, event: LogEvent):
        await self._send_dict(
            {
                "type": "log",
                "stream": event.stream.value,
                "timestamp": event.timestamp.isoformat(),
                "message": event.text,
            }
        )

    async def _send_error(self, message: str):
        """Send error message."""
        await self._send_dict({"type": "error", "message": message})

    async def _handle_connection_error(self, error: Exception):
        """Handle connection errors."""
        await self._send_error(f"Connection error: {str(error)}")
        try:
            await self.websocket.close()
        except RuntimeError:
            # already closed
            pass

    async def _send_dict(self, data: dict):
        try:
            await self.websocket.send_text(json.dumps(data))
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Could not send console message: {e}")

    async def _cleanup(self):
        """Clean up resources."""
        if self.forward_task:
            self.forward_task.cancel()
            await asyncio.gather(self.forward_task, return_exceptions=True)
        if self.subscription:
            self.subscription.cancel()
