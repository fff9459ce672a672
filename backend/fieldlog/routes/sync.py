"""
FieldLog Backend: Sync Route Handlers
=======================================

What:  HTTP surface of the SyncOrchestrator, plus the endpoint peers call
       during a network sync.

Routes:
    GET  /api/sync/announce     start accepting/advertising sync
    GET  /api/sync/unannounce   stop
    GET  /api/sync/targets      known peers
    GET  /api/sync/start        ?filename=... | ?host=...&port=...
                                → application/x-ndjson progress stream
    POST /api/sync/exchange     server half of a network sync

Streaming:
    Each SyncEvent is written as one JSON line the moment the engine emits
    it. The last line is either replication-complete or replication-error.
    A request without a usable target gets a single replication-error line
    with HTTP 400, before any session starts.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse

from fieldlog.dependencies import get_replication_engine, get_sync_orchestrator
from fieldlog.exceptions import UsageError
from fieldlog.middleware.request_id import request_id_var
from fieldlog.schemas.observation import ErrorResponse
from fieldlog.schemas.sync import (
    ExchangeRequest,
    ExchangeResponse,
    SyncEvent,
    SyncTargetParams,
    SyncTopic,
)
from fieldlog.services.peer_sync import PeerReplicationEngine
from fieldlog.services.sync_orchestrator import ReplicationStream, SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["Sync"])

NDJSON = "application/x-ndjson"


@router.get("/announce", summary="Start announcing this device for sync")
async def sync_announce(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> Response:
    await orchestrator.announce()
    return Response(status_code=200)


@router.get("/unannounce", summary="Stop announcing this device")
async def sync_close(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> Response:
    await orchestrator.unannounce()
    return Response(status_code=200)


@router.get("/targets", summary="List sync targets")
async def get_sync_targets(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> List[Dict[str, Any]]:
    return orchestrator.list_targets()


async def _ndjson(stream: ReplicationStream) -> AsyncIterator[str]:
    async for event in stream:
        yield event.to_line()


def _parse_port(raw: Optional[str]) -> Optional[int]:
    """Port as an int, or None when absent, non-numeric or out of range."""
    raw = (raw or "").strip()
    if not (raw.isascii() and raw.isdigit()):
        return None
    port = int(raw)
    return port if port <= 65535 else None


@router.get(
    "/start",
    summary="Replicate with an archive file or a peer",
    description=(
        "Streams newline-delimited {topic, message} records: replication-started, "
        "replication-progress..., then replication-complete or replication-error."
    ),
    responses={200: {"content": {NDJSON: {}}}},
)
async def sync_to_target(
    filename: Optional[str] = Query(default=None, description="Archive file to sync with"),
    host: Optional[str] = Query(default=None, description="Peer host"),
    port: Optional[str] = Query(default=None, description="Peer port"),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> Response:
    params = SyncTargetParams(filename=filename, host=host, port=_parse_port(port))
    try:
        stream = orchestrator.replicate_to_target(params)
    except UsageError as e:
        logger.warning("[%s] Sync request rejected: %s", request_id_var.get(""), e.message)
        event = SyncEvent(topic=SyncTopic.ERROR, message=e.message)
        return Response(content=event.to_line(), status_code=400, media_type=NDJSON)

    return StreamingResponse(_ndjson(stream), media_type=NDJSON)


@router.post(
    "/exchange",
    response_model=ExchangeResponse,
    summary="Exchange store versions with a peer",
    responses={503: {"description": "Not announcing", "model": ErrorResponse}},
)
async def sync_exchange(
    body: ExchangeRequest,
    request: Request,
    engine: PeerReplicationEngine = Depends(get_replication_engine),
) -> ExchangeResponse:
    client_host = request.client.host if request.client else "unknown"
    return await engine.accept_exchange(body, client_host)
