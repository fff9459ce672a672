"""
FieldLog Backend: Health Check Route
======================================

What:  Health check endpoint for monitoring and container probes.
How:   Pings the version store and reports whether the device is announcing.

    Status levels:
    - healthy:   store reachable (HTTP 200)
    - unhealthy: store unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response

from fieldlog import __version__
from fieldlog.dependencies import get_store, get_sync_orchestrator
from fieldlog.schemas.observation import HealthResponse
from fieldlog.services.store_base import VersionStore
from fieldlog.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    response: Response,
    store: VersionStore = Depends(get_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> HealthResponse:
    store_status = "connected"
    overall = "healthy"

    try:
        await store.ping()
    except Exception as e:
        store_status = "disconnected"
        overall = "unhealthy"
        response.status_code = 503
        logger.warning("Health check: store unreachable: %s", str(e))

    return HealthResponse(
        status=overall,
        version=__version__,
        store=store_status,
        announcing=orchestrator.announcing,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
