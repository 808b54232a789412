"""Health check and system status routes."""

import time
from typing import Any

from fastapi import APIRouter, HTTPException

from core.config import settings
from database.connection import check_database_health
from schemas.auth import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns basic service health information.
    """
    return HealthResponse(
        status="healthy",
        version=settings.version,
        timestamp=int(time.time()),
    )


@router.get("/health/ready")
async def readiness_check() -> dict[str, Any]:
    """
    Readiness probe.

    Returns 200 when the database answers, 503 otherwise.
    """
    db_health = await check_database_health()

    if db_health["status"] != "healthy":
        raise HTTPException(
            status_code=503,
            detail={
                "status": "not_ready",
                "database": db_health,
                "message": "Database is not available",
            },
        )

    return {"status": "ready", "database": db_health, "timestamp": int(time.time())}


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "alive"}
