"""FastAPI status and control surface for the collector."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nextbus_collector.config import get_settings
from nextbus_collector.logging import (
    bind_log_context,
    clear_log_context,
    get_logger,
    setup_logging,
)
from nextbus_collector.routers.pipeline import router as pipeline_router
from nextbus_collector.services.pipeline.controller import get_controller, reset_controller

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging()
    logger.info("Starting NextBus collector API")

    settings = get_settings()
    if settings.pipeline_auto_start:
        get_controller().start()

    yield

    controller = get_controller()
    if controller.is_running:
        await controller.shutdown()
    reset_controller()
    logger.info("Shutting down NextBus collector API")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Status and control of the NextBus vehicle location collector",
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        bind_log_context(request_id=request_id, path=request.url.path)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        clear_log_context()
        return response

    app.include_router(pipeline_router)

    @app.get("/health", tags=["meta"])
    async def health_check() -> dict[str, Any]:
        """Health check endpoint returning collector status."""
        settings = get_settings()
        pipeline_status = await get_controller().get_status()
        running = pipeline_status["running"]

        issues: list[str] = []
        if settings.pipeline_auto_start and not running:
            issues.append("Collection pipeline is not running")
        if running and pipeline_status.get("recovering"):
            issues.append("Fetcher is recovering from failed fetches")

        return {
            "service": settings.app_name,
            "status": "degraded" if issues else "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "pipeline": {
                    "running": running,
                    "agency": pipeline_status["agency"],
                    "fetchCount": pipeline_status.get("fetch_count", 0),
                    "lastTime": pipeline_status.get("last_time"),
                },
            },
            "issues": issues,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


app = create_app()
