"""
FastAPI application initialization
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.middleware import RequestTracingMiddleware
from api.routes import health, refresh
from core.config import Settings, settings as default_settings
from core.exceptions import ConfigurationError, SyncException
from core.logging import setup_logging
from ingestion.service import SyncService, build_service
from schemas.api import ErrorResponse
import logging

logger = logging.getLogger(__name__)


def _error_response(status_code: int, error: SyncException) -> JSONResponse:
    body = ErrorResponse(
        error=error.category.value,
        detail=error.message,
        context={k: str(v) for k, v in error.context.items()},
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app(service: Optional[SyncService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API.

    When no service is given one is built from settings at startup, the
    schema is created and the periodic scheduler starts if enabled; the
    service is closed at shutdown. An injected service is left to its owner.
    """
    settings = settings or default_settings
    setup_logging(settings)

    app = FastAPI(
        title="Search Query Sync API",
        description="Operational surface of the search-query performance sync engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.service = service
    app.state.owns_service = service is None

    app.add_middleware(RequestTracingMiddleware, slow_request_ms=settings.SLOW_REQUEST_MS)

    app.include_router(health.router)
    app.include_router(refresh.router)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error(f"Configuration error: {exc.message}")
        return _error_response(409, exc)

    @app.exception_handler(SyncException)
    async def sync_error_handler(request: Request, exc: SyncException):
        logger.error(f"Unhandled sync error: {exc}")
        return _error_response(500, exc)

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        logger.info("Starting Search Query Sync API")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        if app.state.service is None:
            app.state.service = build_service(settings)
            await app.state.service.initialize()
        if settings.SCHEDULER_ENABLED and app.state.owns_service:
            app.state.service.start_scheduler()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event"""
        logger.info("Shutting down Search Query Sync API")
        if app.state.owns_service and app.state.service is not None:
            await app.state.service.close()

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Search Query Sync API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "status": "/refresh/status",
                "history": "/refresh/history",
                "alerts": "/refresh/alerts",
                "metrics": "/refresh/metrics",
                "errors": "/refresh/errors",
                "trigger": "/refresh/trigger",
                "cleanup": "/refresh/cleanup"
            }
        }

    return app
