"""
FieldLog Backend: Observation Route Handlers
==============================================

What:  HTTP surface of the ObservationService.
How:   Bodies are read as raw JSON (observations are open documents), handed
       to the service, and the service result returned as JSON. Errors are
       raised as FieldLogError subclasses and formatted by the global
       exception handlers in main.py.

Routes:
    GET    /api/observations                    list every observation
    GET    /api/observations/{id}               head revisions of one id
    POST   /api/observations                    create
    PUT    /api/observations/{id}               update (optimistic concurrency)
    DELETE /api/observations/{id}               delete id and history
    PUT    /api/observations/to-element/{id}    convert to a map element
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from fieldlog.dependencies import get_observation_service, json_body
from fieldlog.schemas.observation import ConvertResponse, DeleteResponse, ErrorResponse
from fieldlog.services.observation_service import ObservationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Observations"])


@router.get(
    "/observations",
    summary="List observations",
    description=(
        "Returns every head revision of every observation, migrated to the "
        "current schema. Records in conflict appear once per head."
    ),
    responses={500: {"description": "Store error", "model": ErrorResponse}},
)
async def list_observations(
    service: ObservationService = Depends(get_observation_service),
) -> List[Dict[str, Any]]:
    return await service.list()


@router.get(
    "/observations/{observation_id}",
    summary="Get the head revisions of an observation",
    description="One entry per head revision; an empty list for unknown ids.",
    responses={500: {"description": "Store error", "model": ErrorResponse}},
)
async def get_observation(
    observation_id: str,
    service: ObservationService = Depends(get_observation_service),
) -> List[Dict[str, Any]]:
    return await service.get(observation_id)


@router.post(
    "/observations",
    summary="Create an observation",
    responses={
        400: {"description": "Malformed JSON or invalid fields", "model": ErrorResponse},
        500: {"description": "Store error", "model": ErrorResponse},
    },
)
async def create_observation(
    body: Any = Depends(json_body),
    service: ObservationService = Depends(get_observation_service),
) -> Dict[str, Any]:
    return await service.create(body)


@router.put(
    "/observations/to-element/{observation_id}",
    response_model=ConvertResponse,
    summary="Convert an observation into a map element",
    description=(
        "Creates a node from the observation and links it through "
        "tags.element_id. Calling it again returns the same element id."
    ),
    responses={404: {"description": "Observation not found", "model": ErrorResponse}},
)
async def convert_observation(
    observation_id: str,
    service: ObservationService = Depends(get_observation_service),
) -> Dict[str, Any]:
    return await service.convert(observation_id)


@router.put(
    "/observations/{observation_id}",
    summary="Update an observation",
    description=(
        "The body must carry the `version` it was edited from. If that version "
        "is unknown or has been superseded the update fails with 409 and the "
        "client must re-fetch."
    ),
    responses={
        400: {"description": "Invalid body or id mismatch", "model": ErrorResponse},
        409: {"description": "Stale or unknown version", "model": ErrorResponse},
    },
)
async def update_observation(
    observation_id: str,
    body: Any = Depends(json_body),
    service: ObservationService = Depends(get_observation_service),
) -> Dict[str, Any]:
    return await service.update(observation_id, body)


@router.delete(
    "/observations/{observation_id}",
    response_model=DeleteResponse,
    summary="Delete an observation and its history",
)
async def delete_observation(
    observation_id: str,
    service: ObservationService = Depends(get_observation_service),
) -> Dict[str, Any]:
    return await service.delete(observation_id)
