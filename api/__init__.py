"""API Package.

FastAPI server exposing sync status and manual triggers.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
