"""FastAPI application entry point for the Canvass intake service.

This module initializes the FastAPI application, sets up logging,
creates database tables, registers routers, and handles global exception
handling.
"""

import re
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from canvass.config import get_settings
from canvass.logging_config import bind_request_id, setup_logging, get_logger
from canvass.models.database import Base, engine
from canvass.routes import health, responses
from canvass.services.telemetry import get_telemetry

# Initialize logger (will be configured during startup)
logger = get_logger(__name__)

SERVICE_NAME = "Canvass Intake"
SERVICE_VERSION = "1.0.0"

# Caller-supplied request ids are reused only when they look like ids
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Startup:
    - Configure logging
    - Create database tables
    - Log application startup information

    Shutdown:
    - Drain queued telemetry events

    Args:
        app: FastAPI application instance

    Yields:
        None
    """
    # Startup
    settings = get_settings()
    setup_logging()
    Base.metadata.create_all(bind=engine)

    logger.info(
        f"{SERVICE_NAME} starting - "
        f"Environment: {settings.environment}, "
        f"Log Level: {settings.log_level}, "
        f"Database: {settings.database_url.split('@')[-1] if '@' in settings.database_url else 'configured'}, "
        f"Version: {settings.git_commit_sha}"
    )

    yield

    # Shutdown
    get_telemetry().flush()
    logger.info(f"{SERVICE_NAME} shutting down")


# Initialize FastAPI application
app = FastAPI(
    title=SERVICE_NAME,
    description="Survey response intake for field canvassing volunteers",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-Batch-Success-Rate",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Assign every request one id, shared by logs, error bodies and headers.

    A well-formed X-Request-ID from the caller is kept; otherwise a UUID
    is generated. The id is stored on request.state for the routes and
    the global exception handler.
    """
    incoming = request.headers.get("X-Request-ID", "")
    request_id = incoming if REQUEST_ID_PATTERN.match(incoming) else str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)

    response = await call_next(request)
    response.headers.setdefault("X-Request-ID", request_id)
    return response


# Root endpoint
@app.get("/")
async def root() -> dict:
    """Root endpoint with basic API information.

    Returns:
        dict: API information and status
    """
    settings = get_settings()
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "commit": settings.git_commit_sha,
        "environment": settings.environment,
        "status": "operational"
    }


# Register routers
app.include_router(health.router, tags=["Health"])
app.include_router(responses.router, tags=["Responses"])


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions.

    Logs all unhandled exceptions and returns a generic error response
    to prevent leaking sensitive information.

    Args:
        request: FastAPI request object
        exc: Exception that was raised

    Returns:
        JSONResponse: Generic error response
    """
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    logger.error(
        f"Unhandled exception for {request.method} {request.url}: {exc}",
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "An unexpected error occurred. Please try again later.",
            "code": "SERVER_ERROR",
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )
