"""
FastAPI application entry point.

This module provides the application factory with:
- Package endpoint routes under the API prefix
- JWT extraction from the Authorization header or cookie
- Request logging with correlation IDs
- Prometheus metrics
- Health and readiness endpoints
- CORS
- Database connection management through the framework instance
"""

import time
import uuid
import structlog
import uvicorn
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Gauge, generate_latest

from api.src.config import Settings, get_settings
from api.src.middleware.auth import JwtAuthMiddleware
from api.src.routers.web_service import build_api_router
from api.src.services.dx_app import DxApp
from shared.errors import DxError
from shared.logging import bind_context, clear_context, configure_logging

logger = structlog.get_logger(__name__)

# ============================================================================
# Prometheus Metrics
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"]
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method", "endpoint"]
)

# ============================================================================
# Lifespan Management
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown events.

    Connects the database modules on startup and closes them on shutdown.
    """
    dx_app: DxApp = app.state.dx_app
    settings: Settings = app.state.settings

    logger.info(
        "application_starting",
        app_name=dx_app.app_name,
        version=settings.app_version,
        environment=settings.environment
    )

    try:
        await dx_app.startup()
        logger.info("application_started", app_name=dx_app.app_name)
        yield

    except Exception as e:
        logger.error("application_startup_failed", error=str(e), exc_info=True)
        raise

    finally:
        logger.info("application_shutting_down")
        try:
            await dx_app.shutdown()
            logger.info("application_shutdown_complete")
        except Exception as e:
            logger.error("application_shutdown_failed", error=str(e), exc_info=True)


# ============================================================================
# Middleware
# ============================================================================


def get_route_template(request: Request) -> str:
    """
    Path template of the route serving a request, e.g. "/api/crm/getAccount/{id}".

    Used as the metrics label so that path parameters do not create a new
    label set per value. Paths matching no route share one label.
    """
    partial_match = None
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return route.path
        if match == Match.PARTIAL and partial_match is None:
            partial_match = route.path
    return partial_match or "unmatched"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request logging and metrics."""

    async def dispatch(self, request: Request, call_next):
        """Process request and log details."""
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())

        method = request.method
        path = request.url.path
        endpoint = get_route_template(request)

        clear_context()
        bind_context(correlation_id=correlation_id)
        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        logger.info(
            "request_started",
            method=method,
            path=path,
            client_ip=request.client.host if request.client else "unknown",
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

            logger.info(
                "request_completed",
                method=method,
                path=path,
                status_code=response.status_code,
                duration=f"{duration:.3f}s",
            )

            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration=f"{duration:.3f}s",
                exc_info=True
            )
            raise

        finally:
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


# ============================================================================
# Exception Handlers
# ============================================================================


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    logger.warning("validation_error", path=request.url.path, errors=exc.errors())
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"message": "Invalid request", "detail": exc.errors()}
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    logger.warning(
        "http_exception",
        path=request.url.path,
        status_code=exc.status_code,
        detail=exc.detail
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail}
    )


async def dx_exception_handler(request: Request, exc: DxError):
    """Handle framework errors raised outside endpoint operations."""
    logger.warning("dx_error", path=request.url.path, error=exc.message, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": exc.message}
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error("unexpected_exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error"}
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app(settings: Optional[Settings] = None, dx_app: Optional[DxApp] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings; cached settings if None
        dx_app: Framework instance; built from the settings if None

    Returns:
        FastAPI application
    """
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.log_format == "json",
        app_name=settings.app_name,
        environment=settings.environment,
    )

    dx_app = dx_app or DxApp(settings)
    # Port and CORS defaults may come from the webConfig block of dxconfig.json
    settings = dx_app.settings

    app = FastAPI(
        title=dx_app.app_name,
        version=settings.app_version,
        description="Data-model-driven API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dx_app = dx_app

    # Middleware runs in reverse order of registration
    app.add_middleware(JwtAuthMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    logger.info("configuring_cors", origins=settings.cors_allowed_list)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.allows_all_origins else settings.cors_allowed_list,
        allow_credentials=not settings.allows_all_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(DxError, dx_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # ========================================================================
    # Health and Readiness Endpoints
    # ========================================================================

    @app.get("/health", tags=["Health"], response_class=JSONResponse)
    async def health_check() -> Dict[str, Any]:
        """
        Health check endpoint.

        Returns basic health status without checking dependencies.
        """
        return {
            "status": "healthy",
            "service": dx_app.app_name,
            "version": settings.app_version,
            "environment": settings.environment
        }

    @app.get("/ready", tags=["Health"], response_class=JSONResponse)
    async def readiness_check():
        """
        Readiness check endpoint.

        Checks that every database module answers.
        """
        try:
            checks = {
                module: "healthy" if healthy else "unhealthy"
                for module, healthy in (await dx_app.check_db_connection()).items()
            }
        except DxError as e:
            logger.error("database_health_check_failed", error=str(e))
            checks = {"database": "unhealthy"}

        all_healthy = bool(checks) and all(state == "healthy" for state in checks.values())

        return JSONResponse(
            status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if all_healthy else "not_ready",
                "service": dx_app.app_name,
                "version": settings.app_version,
                "checks": checks
            }
        )

    if settings.metrics_enabled:
        @app.get("/metrics", tags=["Monitoring"], response_class=PlainTextResponse)
        async def metrics() -> Response:
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get(settings.api_prefix, include_in_schema=False)
    async def api_docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=app.docs_url)

    app.include_router(build_api_router(dx_app))

    return app


# ============================================================================
# Application Entry Point
# ============================================================================

if __name__ == "__main__":
    settings = get_settings()

    logger.info(
        "starting_uvicorn_server",
        host=settings.host,
        port=settings.web_server_port,
    )

    uvicorn.run(
        "api.src.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.web_server_port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
