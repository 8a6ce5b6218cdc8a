"""
FastAPI application entry point for the NearMe reminder backend.

This module initializes the FastAPI application with:
- Application state (push gateway, geofence-specs publisher, sweep runner)
- Background sweeps (delivery, expiry, offline queue, registry, retention)
- Rate limiting (slowapi)
- Exception handlers for consistent error responses
- Logging configuration

Environment Variables:
    NEARME_DB_URL: Database URL (PostgreSQL in production, SQLite for tests)
    NEARME_ENV: Environment (production/development, default: development)
    NEARME_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
    NEARME_BACKGROUND_SWEEPS_ENABLED: Start periodic sweeps (default: true)
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from backend.src.api.dependencies import limiter
from backend.src.config.pipeline import PipelineConfig
from backend.src.config.settings import get_settings
from backend.src.db.database import SessionLocal, dispose_engine
from backend.src.services.exceptions import (
    ConflictError,
    NotFoundError,
    TransientDependencyError,
    ValidationError,
)
from backend.src.services.geofence_sync import WebSocketSpecsPublisher
from backend.src.services.push_gateway import create_push_gateway
from backend.src.services.sweep_runner import SweepRunner, SweepSchedule
from backend.src.utils.logging_config import init_logging, get_logger
from backend.src.utils.websocket import get_connection_manager


APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Bind the WebSocket manager to the loop, build the push
      gateway and publisher, start background sweeps
    - Shutdown: Stop sweeps, unbind the loop, dispose the engine

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    # Startup
    logger = get_logger("api")
    logger.info("Starting NearMe reminder backend")

    settings = get_settings()
    manager = get_connection_manager()
    manager.bind_loop(asyncio.get_running_loop())

    app.state.push_gateway = create_push_gateway(settings)
    app.state.specs_publisher = WebSocketSpecsPublisher(manager)

    app.state.sweep_runner = None
    if settings.background_sweeps_enabled:
        runner = SweepRunner(
            SessionLocal,
            config=PipelineConfig.from_settings(settings),
            gateway=app.state.push_gateway,
            publisher=app.state.specs_publisher,
            schedule=SweepSchedule.from_intervals(
                settings.sweep_interval_seconds, settings.registry_recheck_minutes
            ),
        )
        runner.start()
        app.state.sweep_runner = runner
    else:
        logger.info("Background sweeps disabled")

    logger.info("NearMe reminder backend started successfully")

    yield

    # Shutdown
    logger.info("Shutting down NearMe reminder backend")
    if app.state.sweep_runner is not None:
        await app.state.sweep_runner.stop()
    manager.bind_loop(None)
    dispose_engine()


# Initialize logging before creating app
init_logging()

# Create FastAPI application
app = FastAPI(
    title="NearMe Reminder API",
    description="Turns device geofence crossings into location-based reminder "
                "notifications: geofence registry, intake filtering, bundling, "
                "delivery with retry, snooze and mute.",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Exception handlers


def _error_response(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    content: Dict[str, Any] = {"error": error, "message": message}
    content.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(PydanticValidationError)
async def pydantic_validation_exception_handler(
    request: Request, exc: PydanticValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors raised outside request parsing.

    Args:
        request: HTTP request
        exc: Pydantic ValidationError

    Returns:
        JSON response with validation error details
    """
    logger = get_logger("api")
    logger.warning(
        "Validation error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": exc.errors(),
        }
    )

    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation Error",
        "Request validation failed",
        details=exc.errors(include_url=False, include_context=False),
    )


@app.exception_handler(ValidationError)
async def service_validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Malformed references and inapplicable actions: rejected, never retried."""
    get_logger("api").info(
        "Request rejected",
        extra={"path": request.url.path, "field": exc.field, "error": exc.message},
    )
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", exc.message, field=exc.field
    )


@app.exception_handler(NotFoundError)
async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, "Not Found", str(exc))


@app.exception_handler(ConflictError)
async def conflict_exception_handler(request: Request, exc: ConflictError) -> JSONResponse:
    """Actions on closed notifications."""
    return _error_response(
        status.HTTP_409_CONFLICT, "Conflict", exc.message, current_status=exc.current_status
    )


@app.exception_handler(TransientDependencyError)
async def transient_exception_handler(
    request: Request, exc: TransientDependencyError
) -> JSONResponse:
    """A dependency is down and the request could not be queued for later."""
    get_logger("api").warning(
        "Dependency unavailable",
        extra={"path": request.url.path, "dependency": exc.dependency, "error": exc.message},
    )
    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Service Unavailable",
        f"{exc.dependency} is temporarily unavailable. Please retry later.",
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """
    Handle SQLAlchemy database errors.

    Args:
        request: HTTP request
        exc: SQLAlchemy exception

    Returns:
        JSON response with database error message
    """
    logger = get_logger("db")
    logger.error(
        "Database error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        }
    )

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Database Error",
        "An error occurred while accessing the database. Please try again later.",
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle all other unhandled exceptions.

    Args:
        request: HTTP request
        exc: Unhandled exception

    Returns:
        JSON response with generic error message
    """
    logger = get_logger("api")
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=True,
    )

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal Server Error",
        "An unexpected error occurred. Please try again later.",
    )


# Health check endpoint


@app.get("/health", tags=["Health"])
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Health status and application information
    """
    runner = getattr(app.state, "sweep_runner", None)
    return {
        "status": "healthy",
        "service": "nearme-backend",
        "version": APP_VERSION,
        "background_sweeps": runner is not None,
        "push_enabled": getattr(app.state, "push_gateway", None) is not None,
    }


# API routers
from backend.src.api import events, geofences, notifications, queue, tasks

app.include_router(events.router, prefix="/api")
app.include_router(tasks.router, prefix="/api")
app.include_router(geofences.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(queue.router, prefix="/api")
