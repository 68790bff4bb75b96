"""Health check endpoints."""

from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from api.dependencies import get_session
from core import __version__
from sync_engine.session import SyncSession


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(session: SyncSession = Depends(get_session)) -> HealthResponse:
    """Health check endpoint.

    The API is healthy whenever the local store is usable; the remote store
    being offline is a normal state for this service.
    """
    local_ok = await session.local.test_connection()
    if session.gate.force_offline:
        remote = "forced_offline"
    else:
        remote = "up" if await session.gate.reachable() else "unreachable"

    return HealthResponse(
        status="healthy" if local_ok else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={
            "api": "up",
            "local_store": "up" if local_ok else "down",
            "remote_store": remote,
        },
    )


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe."""
    return {"status": "alive"}
