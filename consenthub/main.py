"""FastAPI application entrypoint.

Application startup order:
1. Configure logging
2. Initialize database engine and session factory
3. Start the WebSocket forwarder on the app's event bus
4. Register middleware (auth, request id, metrics, CORS)
5. Include all routers

Shutdown order:
1. Stop the WebSocket forwarder
2. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from consenthub.api.router import api_v1_router, public_router
from consenthub.auth.middleware import AuthMiddleware
from consenthub.config import Environment, Settings, get_settings
from consenthub.core.exceptions import ConsentHubError
from consenthub.database import Base, close_db, get_engine, init_db
from consenthub.events.bus import EventBus
from consenthub.middleware.prometheus import PrometheusMiddleware, get_metrics
from consenthub.telemetry.logging import RequestIdMiddleware, configure_logging
from consenthub.websocket.dsar import ws_router as websocket_router
from consenthub.websocket.manager import ConnectionManager

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )
    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
    )

    init_db(settings, for_test=settings.environment == Environment.TEST)
    if settings.database_url.startswith("sqlite"):
        # Local SQLite has no migrations; Postgres schema comes from Alembic
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    ws_manager: ConnectionManager = app.state.ws_manager
    await ws_manager.start(app.state.event_bus)

    log.info("app.ready")
    yield

    log.info("app.ws_manager_shutdown", active_connections=ws_manager.connection_count())
    await ws_manager.stop()
    await close_db()
    log.info("app.shutdown")


def _validation_fields(exc: RequestValidationError) -> list[str]:
    fields: list[str] = []
    for err in exc.errors():
        # Drop the location prefix ("body", "query", "path")
        loc = [str(part) for part in err.get("loc", ())][1:]
        name = ".".join(loc)
        if name and name not in fields:
            fields.append(name)
    return fields


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory.

    Passing ``settings`` pins them for this app instance (tests do this);
    otherwise they are loaded from the environment.
    """
    pinned = settings is not None
    settings = settings or get_settings()

    app = FastAPI(
        title="ConsentHub DSAR Service",
        description=(
            "Data subject access request lifecycle: submission, SLA tracking, "
            "status workflow and real-time notifications."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.event_bus = EventBus(
        history_size=settings.event_history_size,
        queue_size=settings.event_subscriber_queue_size,
    )
    app.state.ws_manager = ConnectionManager()
    if pinned:
        app.dependency_overrides[get_settings] = lambda: settings

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(AuthMiddleware)
    # Outermost, so every log line below carries request_id
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)
    app.include_router(websocket_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Any:
        """Prometheus metrics endpoint."""
        return get_metrics()

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(ConsentHubError)
    async def domain_error_handler(request: Request, exc: ConsentHubError) -> JSONResponse:
        log_method = log.error if exc.status_code >= 500 else log.warning
        log_method(
            "app.request_failed",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error=exc.error_code,
            message=exc.message,
        )
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = _validation_fields(exc)
        log.warning("app.request_invalid", path=request.url.path, fields=fields)
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "validation_error",
                "message": f"Invalid {', '.join(fields) or 'request'}",
                "fields": fields,
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": "http_error", "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "internal_error",
                "message": "Internal server error",
            },
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
