"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from timeflow.api.routes import integrations, sync as sync_routes, webhooks
from timeflow.db.engine import get_engine
from timeflow.sync.factory import build_dispatcher


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        app.state.dispatcher = build_dispatcher(engine)
        yield
        # Let webhook-triggered runs finish before the loop goes away
        await app.state.dispatcher.drain()

    app = FastAPI(
        title="TimeFlow Sync API",
        description="Google Calendar / Tasks synchronization engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(integrations.router, prefix="/integrations", tags=["integrations"])

    return app


# Module-level app instance for uvicorn
app = create_app()
