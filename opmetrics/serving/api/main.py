"""
FastAPI Application Factory

Creates and configures the API application: middleware, routers, error
mapping and the Prometheus exposition endpoint.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog

from opmetrics.config import get_settings
from opmetrics.metrics.errors import InvalidPeriodError, TransientStoreFailure, UnknownCurrencyError
from opmetrics.serving.api.middleware import RequestLoggingMiddleware
from opmetrics.serving.api.routes import health_router, metrics_router

logger = structlog.get_logger(__name__)

RETRY_AFTER_SECONDS = 5


async def transient_store_failure_handler(request: Request, exc: TransientStoreFailure) -> JSONResponse:
    logger.error("Request failed on order store", path=request.url.path, stage=exc.stage)
    return JSONResponse(
        status_code=503,
        content={"error": str(exc), "retryable": True},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


async def invalid_request_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": str(exc), "retryable": False})


def create_api_app(lifespan=None, metrics_service=None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        lifespan: Startup/shutdown handler wiring the metrics service
        metrics_service: Pre-built service (tests, embedding)

    Returns:
        Configured FastAPI app instance
    """
    settings = get_settings()
    app = FastAPI(
        title="Operation Metrics API",
        description="Dashboard metrics for merchant operations",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    if metrics_service is not None:
        app.state.metrics_service = metrics_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(TransientStoreFailure, transient_store_failure_handler)
    app.add_exception_handler(InvalidPeriodError, invalid_request_handler)
    app.add_exception_handler(UnknownCurrencyError, invalid_request_handler)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(metrics_router, prefix="/api/v1", tags=["Metrics"])

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": "Operation Metrics API",
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app
