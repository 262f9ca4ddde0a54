from typing import Annotated

from fastapi import Depends
from fastapi.requests import HTTPConnection

from .worlds import WorldSupervisor


def get_supervisor(connection: HTTPConnection) -> WorldSupervisor:
    """The supervisor built by the app lifespan, for both HTTP and WebSocket routes"""
    return connection.app.state.supervisor


Supervisor = Annotated[WorldSupervisor, Depends(get_supervisor)]
