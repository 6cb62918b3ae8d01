"""
Health check endpoints.

Provides liveness and readiness probes for monitoring.
"""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from chatrelay import __version__
from chatrelay.auth import get_app_settings
from chatrelay.core.metrics import metrics
from chatrelay.db import verify_database_connection

router = APIRouter(tags=["health"])


@router.get("/health")
async def healthcheck(request: Request) -> dict[str, Any]:
    """
    Liveness probe.

    Returns basic service status plus which upstream providers have
    credentials configured.
    """
    settings = get_app_settings(request)
    manager = getattr(request.app.state, "provider_manager", None)
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "debug": settings.debug,
        "providers": manager.configured_providers if manager else [],
    }


@router.get("/readyz")
async def readiness(request: Request) -> JSONResponse:
    """Readiness probe: the database must answer and a provider must be configured."""
    manager = getattr(request.app.state, "provider_manager", None)
    checks = {
        "database": verify_database_connection(),
        "providers": bool(manager and manager.configured_providers),
    }
    ready = all(checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": checks,
            "metrics": metrics.snapshot(),
        },
    )
