"""FastAPI server for the invoice sync engine.

Exposes sync status and manual triggers to a local UI shell.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health, session, sync
from core.observability.logging import get_logger
from sync_engine.session import SyncSession, build_session

logger = get_logger(__name__)


def create_app(sync_session: Optional[SyncSession] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        sync_session: Session to serve; built from the environment on startup if omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        app.state.session = sync_session or build_session()
        logger.info("Invoice sync API starting up...")

        yield

        # Shutdown
        logger.info("Invoice sync API shutting down...")
        await app.state.session.close()

    app = FastAPI(
        title="Invoice Sync API",
        description="Status and manual triggers for the offline-first invoice sync engine",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Local UI shell only
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])
    app.include_router(session.router, prefix="/session", tags=["Session"])

    return app


# Default app instance; the session is built from the environment on startup
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="127.0.0.1", port=8000, reload=True)
