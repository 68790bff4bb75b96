"""API Routes Package."""

from api.routes import health, session, sync

__all__ = [
    "health",
    "session",
    "sync",
]
