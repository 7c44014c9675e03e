"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from vtrack.api.routes import records, sync as sync_routes
from vtrack.sync.orchestrator import SyncOrchestrator


def create_app(orchestrator: Optional[SyncOrchestrator] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        orchestrator: Engine instance the routes drive. Built from the
            default engine and settings when omitted.
    """
    if orchestrator is None:
        from vtrack.db.engine import get_engine
        from vtrack.sync.wiring import build_orchestrator

        orchestrator = build_orchestrator(get_engine())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Return records a crash left in flight before serving requests
        orchestrator.start()
        yield
        await orchestrator.close()

    app = FastAPI(
        title="Volunteer Tracker Sync API",
        description="Offline-first sync engine for volunteers, events and attendance",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(records.router, prefix="/records", tags=["records"])

    return app
