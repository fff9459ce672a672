"""
FieldLog Backend: Observation Schemas
=======================================

What:  Pydantic models for the observation API contract.
How:   Observation bodies are open documents (tags, legacy properties), so the
       routes return plain dicts; the models here pin down the parts that do
       have a fixed shape.

Models:
    ObservationFields   the subset of an observation a client may set
    DeleteResponse      acknowledgement of DELETE /api/observations/{id}
    ConvertResponse     element id returned by PUT /api/observations/to-element/{id}
    ErrorResponse       body of every error response
    HealthResponse      body of GET /health
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ObservationFields(BaseModel):
    """
    The client-writable properties of an observation.

    Unknown properties are rejected at construction (extra="forbid");
    callers pick the writable keys out of a payload before building it.
    `model_dump(exclude_unset=True)` returns only what the client sent.
    """

    model_config = ConfigDict(extra="forbid")

    lon: Optional[Union[int, float]] = None
    lat: Optional[Union[int, float]] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    tags: Optional[Dict[str, Any]] = None
    ref: Any = None
    metadata: Any = None
    fields: Any = None
    schemaVersion: Any = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class DeleteResponse(BaseModel):
    deleted: bool = Field(default=True, description="The id and its history were removed")


class ConvertResponse(BaseModel):
    id: str = Field(description="Id of the element created from the observation")


class ErrorResponse(BaseModel):
    """
    Standardized error body.

    Example:
        {
            "error": "no_version",
            "message": "The given version does not exist or has been superseded",
            "details": {"version": "5f0c..."},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, unhealthy")
    version: str = Field(description="Application version")
    store: str = Field(description="Store connectivity: connected, disconnected")
    announcing: bool = Field(description="Whether this device accepts inbound sync")
    uptime_seconds: float = Field(description="Seconds since service started")
