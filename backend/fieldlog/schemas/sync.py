"""
FieldLog Backend: Sync Schemas
================================

What:  Pydantic models for sync requests, progress events and peer exchange.
Who:   Used by the sync routes, the SyncOrchestrator and PeerReplicationEngine.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SyncTopic(str, Enum):
    STARTED = "replication-started"
    PROGRESS = "replication-progress"
    COMPLETE = "replication-complete"
    ERROR = "replication-error"


TERMINAL_TOPICS = frozenset((SyncTopic.COMPLETE, SyncTopic.ERROR))


class SyncEvent(BaseModel):
    """One record of the newline-delimited progress stream."""

    topic: SyncTopic
    message: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.topic in TERMINAL_TOPICS

    def to_line(self) -> str:
        return self.model_dump_json() + "\n"


class SyncTargetParams(BaseModel):
    """
    Where to replicate to: a local archive file, or a peer on the network.

    A request is usable when it names a filename, or both a host and a port.
    """

    filename: Optional[str] = Field(default=None, description="Archive to replay/export")
    host: Optional[str] = Field(default=None, description="Peer host name or address")
    port: Optional[int] = Field(default=None, ge=0, le=65535, description="Peer port")


class SyncTarget(BaseModel):
    name: str
    host: str
    port: int
    type: str = "wifi"


class VersionRecordModel(BaseModel):
    """One store version as carried in archives and peer exchanges."""

    version: str = Field(min_length=1, max_length=64)
    key: str = Field(min_length=1, max_length=64)
    value: Dict[str, Any]
    links: List[str] = Field(default_factory=list)


class ExchangeRequest(BaseModel):
    device_id: str
    port: Optional[int] = Field(default=None, ge=0, le=65535)
    records: List[VersionRecordModel] = Field(default_factory=list)


class ExchangeResponse(BaseModel):
    device_id: str
    records: List[VersionRecordModel] = Field(default_factory=list)
