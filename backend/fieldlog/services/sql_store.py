"""
FieldLog Backend: SQL Version Store
=====================================

What:  VersionStore implementation on async SQLAlchemy (SQLite or PostgreSQL).
How:   Each public operation runs in its own session and transaction.
       Writes additionally hold an asyncio.Lock so the head check of a
       conditional write and the write itself cannot interleave with another
       write in this process.
Who:   Constructed once in the application lifespan; shared by the
       observation service and the replication engine.

Head bookkeeping:
    put(key, value, links)  → remove `links` from the heads of key, add the
                              new version
    import_versions(...)    → recompute heads of every touched key as the
                              versions no other version of that key links to
"""

import asyncio
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from itertools import groupby
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldlog.exceptions import StoreConflictError, StoreError, StoreNotFoundError
from fieldlog.models.version import HeadRecord, VersionRecord
from fieldlog.services.store_base import BatchOp, StoredNode, VersionStore

logger = logging.getLogger(__name__)


def new_key() -> str:
    """Random identifier for a new logical record (16 hex characters)."""
    return secrets.token_hex(8)


def new_version() -> str:
    return uuid.uuid4().hex


class SqlVersionStore(VersionStore):
    """
    Version-linked key-value store on two tables, `versions` and `heads`.

    Error Handling Strategy:
        SQLAlchemy errors are logged and wrapped in StoreError (the message
        hides table and query details). StoreNotFoundError and
        StoreConflictError are raised before anything is written.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError as e:
                logger.error("Store operation failed: %s", str(e), exc_info=True)
                raise StoreError(context={"error_type": type(e).__name__}) from e

    # ── Internal helpers (run inside an open transaction) ─────────────────

    async def _heads(self, session: AsyncSession, key: str) -> List[str]:
        result = await session.execute(
            select(HeadRecord.version).where(HeadRecord.key == key)
        )
        return list(result.scalars().all())

    async def _write(
        self,
        session: AsyncSession,
        key: str,
        value: Dict[str, Any],
        links: List[str],
    ) -> StoredNode:
        version = new_version()
        session.add(VersionRecord(version=version, key=key, value=value, links=list(links)))
        # Flush the version before its head row references it
        await session.flush()
        if links:
            await session.execute(
                delete(HeadRecord).where(
                    HeadRecord.key == key, HeadRecord.version.in_(links)
                )
            )
        session.add(HeadRecord(key=key, version=version))
        return StoredNode(key=key, version=version, value=value, links=list(links))

    async def _delete_key(self, session: AsyncSession, key: str) -> None:
        await session.execute(delete(HeadRecord).where(HeadRecord.key == key))
        await session.execute(delete(VersionRecord).where(VersionRecord.key == key))

    async def _recompute_heads(self, session: AsyncSession, key: str) -> None:
        result = await session.execute(
            select(VersionRecord.version, VersionRecord.links).where(VersionRecord.key == key)
        )
        rows = result.all()
        linked = set()
        for _, links in rows:
            linked.update(links or [])
        await session.execute(delete(HeadRecord).where(HeadRecord.key == key))
        for version, _ in rows:
            if version not in linked:
                session.add(HeadRecord(key=key, version=version))

    # ── VersionStore interface ────────────────────────────────────────────

    async def create(self, value: Dict[str, Any]) -> StoredNode:
        async with self._write_lock:
            async with self._transaction() as session:
                node = await self._write(session, new_key(), value, [])
        logger.debug("Created %s@%s", node.key, node.version)
        return node

    async def put(
        self,
        key: str,
        value: Dict[str, Any],
        links: Optional[List[str]] = None,
    ) -> StoredNode:
        async with self._write_lock:
            async with self._transaction() as session:
                heads = await self._heads(session, key)
                if links is None:
                    links = heads
                else:
                    stale = [link for link in links if link not in heads]
                    if stale:
                        raise StoreConflictError(key, stale)
                node = await self._write(session, key, value, links)
        logger.debug("Put %s@%s (links=%s)", node.key, node.version, node.links)
        return node

    async def get(self, key: str) -> Dict[str, Dict[str, Any]]:
        async with self._transaction() as session:
            result = await session.execute(
                select(VersionRecord)
                .join(HeadRecord, HeadRecord.version == VersionRecord.version)
                .where(HeadRecord.key == key)
                .order_by(VersionRecord.created_at, VersionRecord.version)
            )
            return {row.version: row.value for row in result.scalars().all()}

    async def get_by_version(self, version: str) -> StoredNode:
        async with self._transaction() as session:
            row = await session.get(VersionRecord, version)
            if row is None:
                raise StoreNotFoundError(version)
            return StoredNode(
                key=row.key, version=row.version, value=row.value, links=list(row.links or [])
            )

    async def delete(self, key: str) -> None:
        async with self._write_lock:
            async with self._transaction() as session:
                await self._delete_key(session, key)
        logger.debug("Deleted %s", key)

    async def batch(self, ops: Iterable[BatchOp]) -> List[StoredNode]:
        ops = list(ops)
        written = []
        async with self._write_lock:
            async with self._transaction() as session:
                for op in ops:
                    if op.type == "put":
                        heads = await self._heads(session, op.key)
                        written.append(await self._write(session, op.key, op.value or {}, heads))
                    elif op.type == "del":
                        await self._delete_key(session, op.key)
                    else:
                        raise StoreError(
                            message=f"Unknown batch operation '{op.type}'",
                            context={"key": op.key},
                        )
        logger.debug("Applied batch of %d operations", len(ops))
        return written

    async def iter_heads(self) -> AsyncIterator[Tuple[str, Dict[str, Dict[str, Any]]]]:
        async with self._transaction() as session:
            result = await session.execute(
                select(VersionRecord)
                .join(HeadRecord, HeadRecord.version == VersionRecord.version)
                .order_by(VersionRecord.key, VersionRecord.created_at, VersionRecord.version)
            )
            rows = list(result.scalars().all())
        for key, versions in groupby(rows, key=lambda row: row.key):
            yield key, {row.version: row.value for row in versions}

    async def export_versions(self) -> List[Dict[str, Any]]:
        async with self._transaction() as session:
            result = await session.execute(
                select(VersionRecord).order_by(VersionRecord.created_at, VersionRecord.version)
            )
            return [row.to_record() for row in result.scalars().all()]

    async def import_versions(self, records: Iterable[Dict[str, Any]]) -> int:
        records = list(records)
        if not records:
            return 0
        inserted = 0
        async with self._write_lock:
            async with self._transaction() as session:
                known = await session.execute(
                    select(VersionRecord.version).where(
                        VersionRecord.version.in_([r["version"] for r in records])
                    )
                )
                seen = set(known.scalars().all())
                touched = set()
                for record in records:
                    if record["version"] in seen:
                        continue
                    seen.add(record["version"])
                    session.add(
                        VersionRecord(
                            version=record["version"],
                            key=record["key"],
                            value=record["value"],
                            links=list(record.get("links") or []),
                        )
                    )
                    touched.add(record["key"])
                    inserted += 1
                await session.flush()
                for key in touched:
                    await self._recompute_heads(session, key)
        logger.info("Imported %d new versions (%d offered)", inserted, len(records))
        return inserted

    async def ping(self) -> None:
        async with self._transaction() as session:
            await session.execute(select(1))
