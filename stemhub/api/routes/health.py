"""Health check endpoints."""
from __future__ import annotations

from fastapi import APIRouter

from stemhub.config import settings

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
    }
