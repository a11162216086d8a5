"""
StemHub API

FastAPI application for stem-based collaborative music revision.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from stemhub.api.routes import health, stages, stems, tracks, upstreams
from stemhub.config import settings
from stemhub.db import close_db, init_db
from stemhub.services.errors import WorkflowError
from stemhub.services.mixing import close_mixing_backend

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Mixing service: %s", settings.mixing_service_url or "external queue (path backend)")

    try:
        await init_db()
    except Exception as e:
        logger.error("❌ Failed to initialize database: %s", e)
        raise

    yield

    logger.info("Shutting down...")
    await close_db()
    await close_mixing_backend()


app = FastAPI(
    title="StemHub API",
    version=settings.app_version,
    description=(
        "Stem-based collaborative revision workflow: tracks, numbered stages, "
        "upstream proposals, reviewer decisions, rollback and guide mixes.\n\n"
        "All endpoints except `/health` require a **Bearer JWT** in the "
        "`Authorization` header."
    ),
    lifespan=lifespan,
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Adapter: FastAPI expects (Request, Exception) but slowapi's handler
# takes (Request, RateLimitExceeded).
def _handle_rate_limit(request: Request, exc: Exception) -> Response:
    if isinstance(exc, RateLimitExceeded):
        return _rate_limit_exceeded_handler(request, exc)
    raise exc


async def _handle_workflow_error(request: Request, exc: Exception) -> Response:
    """Translate typed workflow errors into ``{"detail": ...}`` responses."""
    if not isinstance(exc, WorkflowError):
        raise exc
    if exc.status_code >= 500:
        logger.error("❌ %s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.state.limiter = upstreams.limiter
app.add_exception_handler(RateLimitExceeded, _handle_rate_limit)
app.add_exception_handler(WorkflowError, _handle_workflow_error)

# CORS middleware
if "*" in settings.cors_origins:
    logger.warning(
        "SECURITY WARNING: CORS allows all origins. "
        "Set STEMHUB_CORS_ORIGINS to specific domains in production."
    )
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(tracks.router, prefix="/api/v1", tags=["tracks"])
app.include_router(stems.router, prefix="/api/v1", tags=["stems"])
app.include_router(stages.router, prefix="/api/v1", tags=["stages"])
app.include_router(upstreams.router, prefix="/api/v1", tags=["upstreams"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
