"""
FieldLog Backend: Version Store SQLAlchemy Models
===================================================

What:  ORM models for the append-only, version-linked key-value store.
How:   `versions` holds every revision ever written (or replicated in);
       `heads` holds, per key, the revisions that no other revision of the
       same key links to.
Who:   Used by SqlVersionStore and by alembic.

Table Design:
    versions
        version     opaque revision id (primary key, never reused)
        key         logical record id (observation id, element id)
        value       JSON document of the revision
        links       JSON list of parent versions this revision supersedes
        created_at  local insertion time, used to order exports

    heads
        (key, version) composite primary key. A key with more than one row is
        in conflict: concurrent writers extended the same parent.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fieldlog.database import Base


class VersionRecord(Base):
    """One immutable revision of a record."""

    __tablename__ = "versions"

    version: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    links: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_versions_key", "key"),
        Index("idx_versions_created_at", "created_at"),
    )

    def to_record(self) -> Dict[str, Any]:
        """Plain dict form used for archives and peer exchange."""
        return {
            "version": self.version,
            "key": self.key,
            "value": self.value,
            "links": list(self.links or []),
        }

    def __repr__(self) -> str:
        return f"<VersionRecord(key='{self.key}', version='{self.version}')>"


class HeadRecord(Base):
    """Marks `version` as a current head of `key`."""

    __tablename__ = "heads"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("versions.version", ondelete="CASCADE"),
        primary_key=True,
    )

    def __repr__(self) -> str:
        return f"<HeadRecord(key='{self.key}', version='{self.version}')>"
