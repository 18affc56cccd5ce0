"""
BrickAI Backend - Main Application

FastAPI application with:
- Sign in with Apple backed session tokens
- Synchronous upload -> transform -> store pipeline
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local + S3)
"""

import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from brickai.api.v1 import api_v1_router
from brickai.core.config import Settings, get_settings
from brickai.core.container import ServiceContainer, build_container
from brickai.core.database import create_db_and_tables
from brickai.core.exceptions import ConfigurationError, register_exception_handlers
from brickai.core.logging import get_logger, request_id_var, setup_logging
from brickai.core.metrics import http_request_duration_seconds, http_requests_total, set_app_info

logger = get_logger(__name__)


def _ensure_sqlite_dir(database_url: str):
    """aiosqlite will not create the parent directory of a file database."""
    prefix = "sqlite+aiosqlite:///"
    if database_url.startswith(prefix):
        path = database_url[len(prefix):]
        if path and path != ":memory:":
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to environment-derived settings
        container: Pre-wired services (tests); built in the lifespan otherwise
    """
    settings = settings or get_settings()

    # =========================================================================
    # Lifespan Handler
    # =========================================================================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler - startup and shutdown."""
        setup_logging(
            log_level=settings.LOG_LEVEL,
            json_format=settings.LOG_FORMAT_JSON
        )
        startup_start = time.time()

        logger.info(
            "application_starting",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT
        )

        missing = settings.missing_required()
        if missing:
            if settings.STRICT_CONFIG:
                raise ConfigurationError(
                    f"Internal configuration error: missing required setting {missing[0]}",
                    setting=missing[0],
                    details={"missing": missing}
                )
            logger.warning("configuration_incomplete", missing=missing)

        if container is not None:
            app.state.container = container
        else:
            _ensure_sqlite_dir(settings.DATABASE_URL)
            app.state.container = build_container(settings)
        if settings.STORAGE_BACKEND.lower() == "local":
            os.makedirs(settings.LOCAL_STORAGE_PATH, exist_ok=True)

        await create_db_and_tables(app.state.container.engine)
        logger.info("database_initialized")

        set_app_info(
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT
        )

        startup_time = time.time() - startup_start
        logger.info("application_ready", startup_time_seconds=startup_time)

        yield

        # Shutdown
        logger.info("application_shutting_down")
        if container is None:
            await app.state.container.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        BrickAI backend.

        - **Auth**: Sign in with Apple code exchange and session refresh
        - **Images**: upload a photo, get it rebuilt in LEGO bricks
        - **Observability**: structured logging, Prometheus metrics
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # =========================================================================
    # Middleware
    # =========================================================================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        """Bind a request id for logging and track request timing for metrics."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        response.headers["X-Process-Time"] = str(duration)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)

    app.include_router(api_v1_router)

    # Serve locally stored assets at the URLs LocalStorage hands out
    if settings.STORAGE_BACKEND.lower() == "local":
        app.mount(
            "/static/storage",
            StaticFiles(directory=settings.LOCAL_STORAGE_PATH, check_dir=False),
            name="storage"
        )

    # =========================================================================
    # Root Endpoints
    # =========================================================================
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/api/docs",
            "metrics": "/metrics"
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION
        }

    @app.get("/ready", tags=["health"])
    async def ready(request: Request):
        """Readiness check - database reachable and configuration complete."""
        checks = {
            "database": False,
            "configuration": not settings.missing_required()
        }

        try:
            async with request.app.state.container.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            logger.warning("readiness_database_failed", error=str(e))

        all_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if all_ready else 503,
            content={
                "ready": all_ready,
                "checks": checks
            }
        )

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "brickai.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
