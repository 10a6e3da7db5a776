"""FastAPI application entry point.

Startup creates tables and fails runs orphaned by an unclean shutdown
before any dispatch is accepted. Shutdown stops the background runner and
closes pooled HTTP clients. Domain errors (``ServiceError``) are turned
into JSON by a single handler.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from skillbase.api.deps import get_runner
from skillbase.api.v1.router import router as v1_router
from skillbase.config import get_settings
from skillbase.database import create_tables
from skillbase.errors import ServiceError
from skillbase.services.http_client_manager import close_all_clients
from skillbase.utils.log_setup import setup_logging
from skillbase.utils.startup import API_RUN_MODES, recover_orphaned_runs

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    create_tables()
    recovered = recover_orphaned_runs(modes=API_RUN_MODES)
    logger.info(
        "Started %s %s (queue %s, cache %s, %d orphaned run(s) recovered)",
        settings.APP_NAME,
        settings.APP_VERSION,
        "enabled" if settings.queue_configured else "off, background runner only",
        "redis" if settings.CACHE_ENABLED and settings.REDIS_URL else "off",
        recovered,
    )

    yield

    runner = get_runner()
    pending = runner.active_runs()
    if pending:
        logger.warning("Shutting down with %d background run(s) still active", len(pending))
    runner.shutdown(wait=False)
    await close_all_clients()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "detail": str(exc)})

    @app.get("/health", tags=["Health"])
    async def health():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queue_configured": settings.queue_configured,
            "background_runs": len(get_runner().active_runs()),
        }

    app.include_router(v1_router)
    return app


app = create_app()
