"""
FieldLog Backend: Request Dependencies
========================================

FastAPI dependencies handing route handlers the services built at startup
(stored on `app.state` by `attach_services`) and the decoded JSON body.
"""

from typing import Any

from fastapi import Request

from fieldlog.services.observation_service import ObservationService
from fieldlog.services.peer_sync import PeerReplicationEngine
from fieldlog.services.store_base import VersionStore
from fieldlog.services.sync_orchestrator import SyncOrchestrator
from fieldlog.services.validation import decode_payload


def get_observation_service(request: Request) -> ObservationService:
    return request.app.state.observation_service


def get_sync_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.sync_orchestrator


def get_replication_engine(request: Request) -> PeerReplicationEngine:
    return request.app.state.replication_engine


def get_store(request: Request) -> VersionStore:
    return request.app.state.store


async def json_body(request: Request) -> Any:
    """Decoded request body; MalformedInputError when it is not JSON."""
    return decode_payload(await request.body())
