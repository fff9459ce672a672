"""
FieldLog Backend: Sync Orchestrator
=====================================

What:  Front of the replication engine: announce/unannounce, list targets,
       and one progress stream per replication request.
How:   replicate_to_target() starts an engine session, attaches listeners
       that translate engine events into SyncEvents, and pushes them into a
       ReplicationStream the route drains as newline-delimited JSON.

State (two independent axes):
    discovery:  idle ──announce()──▶ announcing ──unannounce()──▶ idle
    sessions:   idle ──replicate_to_target()──▶ syncing ──terminal──▶ idle

Event translation:
    progress "replication-started"  →  replication-started
    progress <payload>              →  replication-progress (payload)
    end                             →  replication-complete   (terminal)
    error <exception>               →  replication-error (msg) (terminal)

Listeners are detached at the first terminal event, exactly once; the
stream ignores anything pushed after it closed.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fieldlog.exceptions import UsageError
from fieldlog.schemas.sync import SyncEvent, SyncTargetParams, SyncTopic
from fieldlog.services.replication_base import (
    REPLICATION_STARTED,
    ReplicationEngine,
    ReplicationSession,
)

logger = logging.getLogger(__name__)


class ReplicationStream:
    """
    Push-based channel of SyncEvents with exactly one terminal event.

    The producer calls push() for progress and close() with the terminal
    event; the consumer iterates with `async for`. Callbacks registered with
    on_close() run once, when the terminal event is accepted.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._queue: "asyncio.Queue[SyncEvent]" = asyncio.Queue()
        self._closed = False
        self._close_callbacks: List[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def push(self, event: SyncEvent) -> None:
        if self._closed:
            logger.debug("Dropped %s on closed stream %s", event.topic.value, self.name)
            return
        if event.is_terminal:
            self.close(event)
            return
        self._queue.put_nowait(event)

    def close(self, event: SyncEvent) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(event)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()

    def abort(self, reason: str = "replication aborted") -> None:
        self.close(SyncEvent(topic=SyncTopic.ERROR, message=reason))

    async def __aiter__(self) -> AsyncIterator[SyncEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return


class SyncOrchestrator:
    """
    Sync use cases on top of an injected ReplicationEngine.

    Announcing and replicating are independent: a device can replicate
    while announcing, and several replication requests can run at once.
    """

    def __init__(self, engine: ReplicationEngine):
        self.engine = engine
        self._active: Dict[ReplicationStream, ReplicationSession] = {}

    @property
    def announcing(self) -> bool:
        return self.engine.announcing

    @property
    def active_sessions(self) -> int:
        return len(self._active)

    async def announce(self) -> None:
        await self.engine.announce()

    async def unannounce(self) -> None:
        await self.engine.unannounce()

    def list_targets(self) -> List[Dict[str, Any]]:
        return self.engine.targets()

    def replicate_to_target(self, params: SyncTargetParams) -> ReplicationStream:
        """
        Start one replication session and return its progress stream.

        Raises:
            UsageError: `params` names neither a filename nor host and port.
                Raised before any session is created.
        """
        if params.filename:
            session = self.engine.replicate_from_file(params.filename)
        elif params.host and params.port:
            session = self.engine.sync_to_target(params.host, params.port)
        else:
            raise UsageError()

        stream = ReplicationStream(name=session.name)

        def onprogress(data: Any = None) -> None:
            if data == REPLICATION_STARTED:
                stream.push(SyncEvent(topic=SyncTopic.STARTED))
            else:
                stream.push(SyncEvent(topic=SyncTopic.PROGRESS, message=data))

        def onerror(err: Optional[BaseException] = None) -> None:
            message = getattr(err, "message", None) or str(err) or "replication failed"
            stream.close(SyncEvent(topic=SyncTopic.ERROR, message=message))

        def onend() -> None:
            stream.close(SyncEvent(topic=SyncTopic.COMPLETE))

        def detach() -> None:
            session.remove_listener("progress", onprogress)
            session.remove_listener("error", onerror)
            session.remove_listener("end", onend)
            self._active.pop(stream, None)

        session.on("progress", onprogress)
        session.on("error", onerror)
        session.on("end", onend)
        stream.on_close(detach)

        self._active[stream] = session
        session.start()
        logger.info("Replication session %s started", session.name)
        return stream

    async def close(self) -> None:
        """
        Hard-abort every active session, then close the engine.

        Each open stream ends with a replication-error event.
        """
        for stream, session in list(self._active.items()):
            stream.abort("replication aborted: service closing")
            session.abort()
        await self.engine.close()
