"""Login/logout endpoints.

Authentication itself happens in the UI shell; these endpoints only tell the
sync engine which owner's data to work on.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.dependencies import get_session
from core.errors import OwnerScopeError
from sync_engine.session import SyncSession


router = APIRouter()


class LoginRequest(BaseModel):
    """Owner to switch to."""
    owner_id: str = Field(..., min_length=1, description="Authenticated user id")


class SessionResponse(BaseModel):
    """Current session state."""
    owner_id: Optional[str] = None
    pull_started: bool = False


@router.post("/login", response_model=SessionResponse)
async def login(request: LoginRequest, session: SyncSession = Depends(get_session)) -> SessionResponse:
    """Switch owner; cancels running cycles and starts a pull when configured."""
    try:
        task = await session.on_login(request.owner_id.strip())
    except OwnerScopeError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return SessionResponse(owner_id=session.owner_id, pull_started=task is not None)


@router.post("/logout", response_model=SessionResponse)
async def logout(session: SyncSession = Depends(get_session)) -> SessionResponse:
    """Cancel running cycles and clear the owner."""
    await session.on_logout()
    return SessionResponse(owner_id=None)


@router.get("", response_model=SessionResponse)
async def current_session(session: SyncSession = Depends(get_session)) -> SessionResponse:
    return SessionResponse(owner_id=session.owner_id)
