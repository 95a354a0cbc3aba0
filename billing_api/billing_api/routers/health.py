"""Health-check and readiness probe endpoints.

``/health`` (liveness) is registered under the versioned API prefix
(``/api/v1/health``).  ``/ready`` is registered at the application root so
that orchestrators can gate traffic independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from billing_api import __version__
from billing_api.dependencies import SessionDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so that load-balancers see the service as alive; the
    ``db`` field reports whether the database is reachable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "billing_enabled": settings.billing_enabled,
        "digest_enabled": settings.digest_enabled,
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep) -> JSONResponse:
    """Readiness probe: HTTP 200 ``ready`` or HTTP 503 ``not_ready`` when the database is unreachable."""
    checks: dict[str, str] = {"db": "ok"}
    overall = "ready"
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
