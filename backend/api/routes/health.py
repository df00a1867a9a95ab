"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Runtime status with job counts (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

from app.config import get_settings

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def runtime_status(request: Request) -> dict[str, Any]:
    """
    Runtime status: uptime, versions and scheduler counters.
    Reports "starting" until the lifespan has built the scheduler.
    """
    settings = get_settings()
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    scheduler = getattr(request.app.state, "scheduler", None)
    runtime = scheduler.get_status() if scheduler is not None else None

    return {
        "status": "healthy" if runtime is not None else "starting",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "templates": runtime["templates"] if runtime else 0,
        "running_jobs": runtime["running_jobs"] if runtime else 0,
    }
