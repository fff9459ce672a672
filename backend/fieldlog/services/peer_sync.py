"""
FieldLog Backend: Peer Replication Engine
===========================================

What:  ReplicationEngine that copies store versions between devices, either
       through an archive file (sneakernet) or directly with a peer over HTTP.
How:   Sessions run as asyncio tasks (ReplicationSession). Both directions
       move whole version records; the store merges them and recomputes
       head sets, so replaying the same data twice is harmless.
Who:   Constructed once in the application lifespan and handed to the
       SyncOrchestrator. The /api/sync/exchange route calls accept_exchange().

Archive format:
    JSON lines, one {"version", "key", "value", "links"} record per line.
    A sync with a file imports whatever the file holds, then rewrites it with
    every local version, so the file ends up holding the union of both sides.

Network exchange:
    POST http://host:port/api/sync/exchange  {device_id, port, records}
    → 200 {device_id, records}
    The initiator sends all its versions and imports what the peer returns.
    The peer only accepts while it is announcing.

Resilience:
    Transport failures (connection refused, timeouts) are retried with
    tenacity exponential backoff + jitter. HTTP error statuses and malformed
    responses are not retried; they end the session with an error.
"""

import json
import logging
from functools import partial
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import aiofiles
import aiofiles.os
import httpx
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from fieldlog.config import Settings
from fieldlog.exceptions import ReplicationError
from fieldlog.schemas.sync import (
    ExchangeRequest,
    ExchangeResponse,
    SyncTarget,
    VersionRecordModel,
)
from fieldlog.services.replication_base import (
    REPLICATION_STARTED,
    ReplicationEngine,
    ReplicationSession,
)
from fieldlog.services.store_base import VersionStore

logger = logging.getLogger(__name__)

EXCHANGE_PATH = "/api/sync/exchange"


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class PeerReplicationEngine(ReplicationEngine):
    """
    Announce/target bookkeeping plus file and network replication sessions.

    Targets:
        Peers configured in SYNC_PEERS are always listed. Peers that
        exchanged with this device while it was announcing are added with
        the port they reported.
    """

    def __init__(
        self,
        store: VersionStore,
        device_id: str,
        static_peers: Iterable[Tuple[str, int]] = (),
        listen_port: Optional[int] = None,
        http_timeout: float = 30.0,
        retry_max_attempts: int = 3,
        retry_min_wait: int = 1,
        retry_max_wait: int = 10,
        import_batch_size: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.device_id = device_id
        self.listen_port = listen_port
        self.http_timeout = http_timeout
        self.retry_max_attempts = retry_max_attempts
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait
        self.import_batch_size = import_batch_size
        # Tests swap in httpx.MockTransport / ASGITransport
        self._transport = transport
        self._static_peers = list(static_peers)
        self._seen_peers: Dict[Tuple[str, int], str] = {}
        self._announcing = False
        self._sessions: Set[ReplicationSession] = set()

    @classmethod
    def from_settings(cls, store: VersionStore, settings: Settings) -> "PeerReplicationEngine":
        return cls(
            store,
            device_id=settings.device_id,
            static_peers=settings.sync_peers_list,
            listen_port=settings.backend_port,
            http_timeout=settings.sync_http_timeout,
            retry_max_attempts=settings.sync_retry_max_attempts,
            retry_min_wait=settings.sync_retry_min_wait,
            retry_max_wait=settings.sync_retry_max_wait,
            import_batch_size=settings.sync_import_batch_size,
        )

    # ── Discovery ─────────────────────────────────────────────────────────

    @property
    def announcing(self) -> bool:
        return self._announcing

    async def announce(self) -> None:
        self._announcing = True
        logger.info("Device %s announcing for sync", self.device_id)

    async def unannounce(self) -> None:
        self._announcing = False
        logger.info("Device %s stopped announcing", self.device_id)

    def targets(self) -> List[Dict[str, Any]]:
        targets = {}
        for host, port in self._static_peers:
            targets[(host, port)] = SyncTarget(name=f"{host}:{port}", host=host, port=port)
        for (host, port), name in self._seen_peers.items():
            targets.setdefault((host, port), SyncTarget(name=name, host=host, port=port))
        return [t.model_dump() for t in targets.values()]

    # ── Sessions ──────────────────────────────────────────────────────────

    def _track(self, session: ReplicationSession) -> ReplicationSession:
        self._sessions = {s for s in self._sessions if not s.finished}
        self._sessions.add(session)
        return session

    def replicate_from_file(self, filename: str) -> ReplicationSession:
        return self._track(ReplicationSession(
            partial(self._replicate_file, path=Path(filename)), name=f"file:{filename}"
        ))

    def sync_to_target(self, host: str, port: int) -> ReplicationSession:
        return self._track(ReplicationSession(
            partial(self._replicate_peer, host=host, port=port), name=f"peer:{host}:{port}"
        ))

    async def _import(self, session: ReplicationSession, records: List[Dict[str, Any]]) -> int:
        total = len(records)
        sofar = 0
        inserted = 0
        for chunk in _chunks(records, self.import_batch_size):
            inserted += await self.store.import_versions(chunk)
            sofar += len(chunk)
            session.emit("progress", {"direction": "import", "sofar": sofar, "total": total})
        return inserted

    async def _replicate_file(self, session: ReplicationSession, path: Path) -> None:
        session.emit("progress", REPLICATION_STARTED)

        incoming = await self._read_archive(path) if path.exists() else []
        inserted = await self._import(session, incoming)

        records = await self.store.export_versions()
        await self._write_archive(path, records)
        session.emit(
            "progress", {"direction": "export", "sofar": len(records), "total": len(records)}
        )
        logger.info(
            "Archive %s: imported %d new versions, exported %d", path, inserted, len(records)
        )

    async def _replicate_peer(self, session: ReplicationSession, host: str, port: int) -> None:
        session.emit("progress", REPLICATION_STARTED)

        records = await self.store.export_versions()
        request = ExchangeRequest(device_id=self.device_id, port=self.listen_port, records=records)
        response = await self._post_exchange(host, port, request)
        session.emit(
            "progress", {"direction": "export", "sofar": len(records), "total": len(records)}
        )

        incoming = [r.model_dump() for r in response.records]
        inserted = await self._import(session, incoming)
        self._seen_peers.setdefault((host, port), response.device_id)
        logger.info(
            "Peer %s:%d (%s): sent %d versions, received %d new",
            host, port, response.device_id, len(records), inserted,
        )

    # ── Archive I/O ───────────────────────────────────────────────────────

    async def _read_archive(self, path: Path) -> List[Dict[str, Any]]:
        records = []
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            lineno = 0
            async for line in f:
                lineno += 1
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(VersionRecordModel.model_validate_json(line).model_dump())
                except PydanticValidationError as e:
                    raise ReplicationError(
                        f"Corrupt sync archive at line {lineno}",
                        context={"path": str(path), "line": lineno},
                    ) from e
        return records

    async def _write_archive(self, path: Path, records: List[Dict[str, Any]]) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            for record in records:
                await f.write(json.dumps(record) + "\n")
        await aiofiles.os.replace(tmp_path, path)

    # ── Network exchange ──────────────────────────────────────────────────

    async def _post_exchange(
        self, host: str, port: int, request: ExchangeRequest
    ) -> ExchangeResponse:
        url = f"http://{host}:{port}{EXCHANGE_PATH}"
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_max_attempts),
                wait=wait_exponential_jitter(
                    initial=self.retry_min_wait, max=self.retry_max_wait
                ),
                retry=retry_if_exception_type(httpx.TransportError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    async with httpx.AsyncClient(
                        timeout=self.http_timeout, transport=self._transport
                    ) as client:
                        response = await client.post(url, json=request.model_dump(mode="json"))
        except httpx.HTTPError as e:
            raise ReplicationError(
                f"Could not reach peer {host}:{port}",
                context={"error_type": type(e).__name__},
            ) from e

        if response.status_code != 200:
            raise ReplicationError(
                f"Peer {host}:{port} refused sync (HTTP {response.status_code})",
                context={"status": response.status_code},
            )
        try:
            return ExchangeResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise ReplicationError(f"Malformed sync response from {host}:{port}") from e

    async def accept_exchange(self, request: ExchangeRequest, client_host: str) -> ExchangeResponse:
        """
        Server half of a network sync.

        Raises:
            ReplicationError: This device is not announcing.
        """
        if not self._announcing:
            raise ReplicationError("This device is not accepting sync right now")
        outgoing = await self.store.export_versions()
        inserted = await self.store.import_versions([r.model_dump() for r in request.records])
        if request.port:
            self._seen_peers[(client_host, request.port)] = request.device_id
        logger.info(
            "Exchange with %s (%s): received %d new versions, sent %d",
            client_host, request.device_id, inserted, len(outgoing),
        )
        return ExchangeResponse(device_id=self.device_id, records=outgoing)

    async def close(self) -> None:
        self._announcing = False
        running = [s for s in self._sessions if not s.finished]
        for session in running:
            session.abort()
        for session in running:
            await session.wait()
        self._sessions.clear()
