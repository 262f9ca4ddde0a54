from fastapi import APIRouter, Query
from pydantic import BaseModel

from ..config import BackendKind, settings
from ..dependencies import Supervisor
from ..models import WorldSpec
from .utils import envelope

router = APIRouter(
    prefix="/worlds",
    tags=["worlds"],
)


class CreateWorldRequest(WorldSpec):
    kind: BackendKind | None = None  # type: ignore[assignment]

    def to_spec(self) -> WorldSpec:
        """Validate against the world spec, filling in the configured default kind"""
        return WorldSpec.model_validate(
            {**self.model_dump(), "kind": self.kind or settings.default_kind}
        )


class StopWorldRequest(BaseModel):
    graceful: bool = True


class CommandRequest(BaseModel):
    command: str


@router.post("", status_code=201)
async def create_world(body: CreateWorldRequest, supervisor: Supervisor):
    snapshot = await supervisor.create(body.to_spec())
    return envelope(
        snapshot.model_dump(mode="json"), message="World created successfully"
    )


@router.get("")
async def list_worlds(supervisor: Supervisor):
    worlds = [
        {
            "id": world.id,
            "kind": world.kind.value,
            "status": world.status.value,
            "port": world.port,
        }
        for world in supervisor.list()
    ]
    return envelope({"worlds": worlds, "count": len(worlds)})


@router.get("/{world_id}")
async def get_world_status(world_id: str, supervisor: Supervisor):
    return envelope(supervisor.status(world_id).model_dump(mode="json"))


@router.get("/{world_id}/logs")
async def get_world_logs(
    world_id: str,
    supervisor: Supervisor,
    lines: int = Query(default=100, ge=1, le=1000),
):
    logs = await supervisor.tail_logs(world_id, lines)
    return envelope({"id": world_id, "lines": lines, "logs": logs})


@router.post("/{world_id}/start")
async def start_world(world_id: str, supervisor: Supervisor):
    snapshot = await supervisor.start(world_id)
    return envelope(
        snapshot.model_dump(mode="json"), message="World started successfully"
    )


@router.post("/{world_id}/stop")
async def stop_world(
    world_id: str, supervisor: Supervisor, body: StopWorldRequest | None = None
):
    graceful = body.graceful if body is not None else True
    snapshot = await supervisor.stop(world_id, graceful=graceful)
    return envelope(
        snapshot.model_dump(mode="json"), message="World stopped successfully"
    )


@router.delete("/{world_id}")
async def delete_world(world_id: str, supervisor: Supervisor):
    await supervisor.delete(world_id)
    return envelope({"id": world_id}, message="World deleted successfully")


@router.post("/{world_id}/command")
async def send_command(world_id: str, body: CommandRequest, supervisor: Supervisor):
    await supervisor.send_command(world_id, body.command)
    return envelope(
        {"id": world_id, "command": body.command.strip()}, message="Command sent"
    )


@router.post("/{world_id}/auth")
async def authenticate_world(world_id: str, supervisor: Supervisor):
    """Start the device login flow, the login URL shows up in the console"""
    await supervisor.authenticate(world_id)
    return envelope({"id": world_id}, message="Authentication requested")
