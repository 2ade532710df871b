"""Health-check and readiness probe endpoints.

``/health`` is a liveness probe that always answers 200.  ``/ready`` gates
traffic on database connectivity and reports the SMS gateway credential
check as ``degraded`` rather than failing, since webhooks can still be
acknowledged and recorded without it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import __version__
from api.dependencies import SessionDep, SmsClientDep

logger = logging.getLogger(__name__)

# Short timeout for the gateway check so probes respond quickly.
_GATEWAY_CHECK_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


async def _check_gateway(sms_client: SmsClientDep) -> bool:
    try:
        return await asyncio.wait_for(sms_client.verify_credentials(), timeout=_GATEWAY_CHECK_TIMEOUT)
    except TimeoutError:
        logger.warning("SMS gateway credential check timed out")
        return False


@router.get("/health")
async def health(session: SessionDep) -> dict[str, Any]:
    """Return service liveness with a database connectivity hint."""
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


@router.get("/ready")
async def readiness_probe(session: SessionDep, sms_client: SmsClientDep) -> JSONResponse:
    """Readiness probe.

    Returns HTTP 200 with ``"ready"`` or ``"degraded"`` status, or HTTP 503
    with ``"not_ready"`` if the database is unreachable.
    """
    checks: dict[str, str] = {"db": "ok", "sms_gateway": "ok"}
    overall = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    if not await _check_gateway(sms_client):
        checks["sms_gateway"] = "unavailable"
        if overall == "ready":
            overall = "degraded"

    return JSONResponse(
        status_code=200 if overall != "not_ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
