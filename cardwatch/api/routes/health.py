"""
CardWatch — Health-Check API
GET  /api/v1/health   →  { status, db, distance_provider, uptime_seconds, version }

Used by Kubernetes liveness / readiness probes.
"""

import logging
import time

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cardwatch.models.schemas import HealthCheck
from cardwatch.services.db import get_db
from cardwatch.services.observability import APP_VERSION

logger = logging.getLogger("cardwatch.api.health")
router = APIRouter()

# Record the time the process started (module-level, set once)
_PROCESS_START = time.perf_counter()


@router.get(
    "/",
    response_model=HealthCheck,
    summary="Health Check",
    description="Liveness / readiness probe.  Verifies DB connectivity and the distance provider.",
)
async def health_check(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    db_status = "healthy"
    overall = "healthy"

    # ── DB ping ────────────────────────────────────────────────────────────
    try:
        result = await db.execute(text("SELECT 1"))
        if result.scalar() != 1:
            raise RuntimeError("unexpected SELECT 1 result")
    except Exception as exc:
        db_status = "unhealthy"
        overall = "unhealthy"
        logger.error("DB health-check failed: %s", exc)

    # ── Distance provider ──────────────────────────────────────────────────
    provider = getattr(request.app.state, "distance_provider", None)
    if provider is None:
        provider_status = "not_configured"
    else:
        provider_status = type(provider).__name__

    uptime = round(time.perf_counter() - _PROCESS_START, 2)

    body = HealthCheck(
        status=overall,
        db=db_status,
        distance_provider=provider_status,
        uptime_seconds=uptime,
        version=APP_VERSION,
    )

    # Return 503 if unhealthy so that Kubernetes can detect it
    status_code = status.HTTP_200_OK if overall != "unhealthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=body.model_dump(), status_code=status_code)
