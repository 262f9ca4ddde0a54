import asyncio
import time
from datetime import datetime, timezone

from fastapi import APIRouter

from ..config import settings
from ..dependencies import Supervisor
from .utils import envelope

router = APIRouter(
    prefix="/health",
    tags=["health"],
)

_started = time.monotonic()


def _summary() -> dict:
    return {
        "status": "ok",
        "agent": "hycore",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _started, 3),
        "environment": settings.environment.value,
    }


@router.get("")
async def health():
    return envelope(_summary())


@router.get("/detailed")
async def health_detailed(supervisor: Supervisor):
    """Also verifies that every backend's runtime (docker, java) is usable"""
    checks = await asyncio.gather(
        *(backend.verify_runtime() for backend in supervisor.backends.values())
    )
    summary = _summary()
    if not any(check.available for check in checks):
        summary["status"] = "degraded"
    summary["backends"] = {
        check.kind.value: {
            "available": check.available,
            "version": check.version,
            "message": check.message,
        }
        for check in checks
    }
    summary["worlds"] = {
        "count": len(supervisor.list()),
        "running": sum(1 for world in supervisor.list() if world.status.is_up),
    }
    return envelope(summary)
