"""Health-check and readiness check endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a readiness check
registered at the application root so that orchestrators can gate traffic
independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.dependencies import RazorpayDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, razorpay: RazorpayDep) -> dict[str, Any]:
    """Return service health with a database ping.

    Always HTTP 200 so load-balancers see the process as alive; ``db``
    reports whether the database answered.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "payments": "configured" if razorpay.configured else "unconfigured",
    }
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness check (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_check(session: SessionDep) -> JSONResponse:
    """Return 200 ``ready`` when the database answers, otherwise 503 ``not_ready``."""
    checks = {"db": "ok"}
    overall = "ready"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
