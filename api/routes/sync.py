"""Sync status and manual trigger endpoints.

Push and pull run to completion within the request; a UI wanting live progress
polls GET /sync/status while the request is open.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.dependencies import get_session, require_login
from core.errors import ConnectivityError
from core.models.refs import DataSourceInfo, SyncStatus, SyncSummary
from core.workflow.base import SyncCycleReport
from sync_engine.session import SyncSession


router = APIRouter()


class CycleResponse(BaseModel):
    """Summary of a finished push or pull cycle."""
    cycle_id: str
    owner_id: str
    direction: str
    result: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    counts: Dict[str, int] = {}
    failures: List[Dict[str, Any]] = []
    error: Optional[Dict[str, Any]] = None


class OfflineRequest(BaseModel):
    """Toggle for the manual offline switch."""
    force_offline: bool


def _cycle_response(report: SyncCycleReport) -> CycleResponse:
    return CycleResponse(**report.to_dict())


@router.get("/status", response_model=SyncStatus)
async def get_sync_status(session: SyncSession = Depends(get_session)) -> SyncStatus:
    """Current cycle state of the logged-in owner."""
    return session.sync_status()


@router.get("/data-source", response_model=DataSourceInfo)
async def get_data_source(session: SyncSession = Depends(get_session)) -> DataSourceInfo:
    """Whether the remote store is reachable and whether offline mode is forced."""
    return await session.get_data_source_info()


@router.get("/summary", response_model=SyncSummary)
async def get_summary(session: SyncSession = Depends(require_login)) -> SyncSummary:
    """Local and remote record counts plus last sync time."""
    return await session.get_sync_summary()


@router.post("/push", response_model=CycleResponse)
async def push(session: SyncSession = Depends(require_login)) -> CycleResponse:
    """Push pending local changes to the remote store."""
    try:
        report = await session.sync_to_cloud()
    except ConnectivityError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _cycle_response(report)


@router.post("/pull", response_model=CycleResponse)
async def pull(session: SyncSession = Depends(require_login)) -> CycleResponse:
    """Pull remote changes into the local store."""
    try:
        report = await session.sync_from_cloud()
    except ConnectivityError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _cycle_response(report)


@router.put("/offline", response_model=DataSourceInfo)
async def set_offline(
    request: OfflineRequest,
    session: SyncSession = Depends(get_session),
) -> DataSourceInfo:
    """Turn the manual offline switch on or off."""
    session.set_force_offline(request.force_offline)
    return await session.get_data_source_info()
