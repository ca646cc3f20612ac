"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from blingsync.api.errors import register_exception_handlers
from blingsync.api.routes import connections, oauth, resources, sync as sync_routes
from blingsync.db.engine import get_engine


def create_app(engine=None) -> FastAPI:
    """Build and return the FastAPI app. Tests pass their own engine."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Creates tables and runs migrations on first use (idempotent)
        if app.state.engine is None:
            app.state.engine = get_engine()
        yield

    app = FastAPI(
        title="Bling Sync API",
        description="Bling ERP authorization, sync runs and API proxy",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    register_exception_handlers(app)
    app.include_router(oauth.router, prefix="/auth", tags=["auth"])
    app.include_router(connections.router, prefix="/bling/config", tags=["config"])
    app.include_router(sync_routes.router, prefix="/bling/sync", tags=["sync"])
    app.include_router(resources.router, prefix="/bling", tags=["bling"])

    return app


# Module-level app instance for uvicorn
app = create_app()
