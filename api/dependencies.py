"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request

from sync_engine.session import SyncSession


def get_session(request: Request) -> SyncSession:
    """The SyncSession created by the app lifespan."""
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Sync session not initialised")
    return session


def require_login(request: Request) -> SyncSession:
    """SyncSession with a logged-in owner."""
    session = get_session(request)
    if not session.owner_id:
        raise HTTPException(status_code=401, detail="No user is logged in")
    return session
