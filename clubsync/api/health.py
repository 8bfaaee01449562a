"""
Health check endpoints for liveness and readiness probes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Response

from clubsync.api.dependencies import get_session
from clubsync.core.database import check_cache_connection
from clubsync.core.logging import get_logger
from clubsync.engine.session import ClubSession
from clubsync.schemas.api import HealthResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Always returns 200 to indicate the bridge is alive."
)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 200 if the local cache is reachable."
)
async def readiness(
    response: Response,
    session: Annotated[ClubSession, Depends(get_session)],
) -> HealthResponse:
    """
    Readiness probe.

    Checks:
    - the local cache database is reachable
    - channel state and offline queue depth (reported, not required:
      an offline client still serves its cached rooms)
    """
    cache_ok = session.cache_engine is None or check_cache_connection(session.cache_engine)
    status = session.channel.status()
    checks = {
        "cache": "ok" if cache_ok else "failed",
        "channel": status["state"],
        "pending_operations": status["pending"],
    }

    if cache_ok:
        return HealthResponse(status="ok", checks=checks)

    logger.warning("Readiness check failed: cache not reachable")
    response.status_code = 503
    return HealthResponse(status="not ready", checks=checks)
