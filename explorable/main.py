"""Explorable FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from explorable import __version__
from explorable.api.dependencies import (
    drain_last_used_tracker,
    get_driver,
    init_runner,
    shutdown_runner,
)
from explorable.config import get_settings
from explorable.db import close_db, init_db
from explorable.errors import ExplorableError
from explorable.services.gc.lifecycle import init_gc_scheduler, shutdown_gc_scheduler
from explorable.services.http import http_client_manager

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info("explorable.startup", version=__version__)
    await init_db()

    await http_client_manager.startup(settings.http)
    init_runner()
    await init_gc_scheduler()

    yield

    logger.info("explorable.shutdown")

    # Runs first: each interrupted run records its error through the DB
    await shutdown_runner()
    await drain_last_used_tracker()
    await shutdown_gc_scheduler()
    await http_client_manager.shutdown()
    await get_driver().close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Explorable",
        description="Turns research papers into interactive sandboxed explorables",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(ExplorableError)
    async def explorable_error_handler(request: Request, exc: ExplorableError):
        """Handle Explorable errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        """Anything unexpected becomes a generic 500."""
        request_id = getattr(request.state, "request_id", None)
        logger.exception("api.unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=ExplorableError().to_dict(request_id),
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    from explorable.api.api_keys import router as api_keys_router
    from explorable.api.files import router as files_router
    from explorable.api.projects import router as projects_router
    from explorable.api.v1 import router as v1_router

    app.include_router(projects_router, prefix="/projects", tags=["projects"])
    app.include_router(files_router, prefix="/pdf", tags=["files"])
    app.include_router(api_keys_router, prefix="/api-keys", tags=["api-keys"])
    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "explorable.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )
