"""
FieldLog Backend: Abstract Replication Engine Interface
=========================================================

What:  Contract between the SyncOrchestrator and whatever moves data between
       devices: discovery (announce/unannounce/targets) and replication
       sessions.
How:   An engine hands out ReplicationSession objects. A session is an event
       emitter: listeners are attached with on(), then start() runs the
       session's coroutine as a task.

Session events, in order:
    "progress"  zero or more; the first carries the literal
                "replication-started", later ones an engine-defined payload
    "end"       natural completion, no arguments       ┐ exactly one
    "error"     failure, one Exception argument         ┘ of these
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Optional

from fieldlog.exceptions import ReplicationError

logger = logging.getLogger(__name__)

REPLICATION_STARTED = "replication-started"

Listener = Callable[..., None]


class ReplicationSession:
    """
    One replication run, observable through "progress" / "end" / "error".

    Args:
        runner: Coroutine function doing the work. It receives the session
                and reports progress with `session.emit("progress", ...)`.
                Returning ends the session with "end"; raising ends it with
                "error".
    """

    def __init__(self, runner: Callable[["ReplicationSession"], Awaitable[None]], name: str = ""):
        self._runner = runner
        self.name = name
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None
        self.finished = False

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event: str) -> int:
        return len(self._listeners[event])

    def emit(self, event: str, *args: Any) -> None:
        # Copy: a listener may detach listeners while we iterate
        for listener in list(self._listeners[event]):
            listener(*args)

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"Replication session {self.name} already started")
        self._task = asyncio.create_task(self._run())

    def abort(self) -> None:
        """Cancel the session; it ends with an "error" event."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Block until the session task has finished (for shutdown and tests)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        try:
            await self._runner(self)
        except asyncio.CancelledError:
            logger.warning("Replication session %s aborted", self.name)
            self._finish("error", ReplicationError("replication aborted"))
            raise
        except Exception as e:
            logger.error("Replication session %s failed: %s", self.name, str(e), exc_info=True)
            self._finish("error", e)
        else:
            logger.info("Replication session %s complete", self.name)
            self._finish("end")

    def _finish(self, event: str, *args: Any) -> None:
        if self.finished:
            return
        self.finished = True
        self.emit(event, *args)


class ReplicationEngine(ABC):
    """Interface of the peer discovery / replication engine."""

    @property
    @abstractmethod
    def announcing(self) -> bool:
        ...

    @abstractmethod
    async def announce(self) -> None:
        """Start advertising this device; returns once the engine confirms."""
        ...

    @abstractmethod
    async def unannounce(self) -> None:
        """Stop advertising this device; returns once the engine confirms."""
        ...

    @abstractmethod
    def targets(self) -> List[Dict[str, Any]]:
        """Snapshot of the sync targets known right now."""
        ...

    @abstractmethod
    def replicate_from_file(self, filename: str) -> ReplicationSession:
        """Unstarted session replicating with a local archive file."""
        ...

    @abstractmethod
    def sync_to_target(self, host: str, port: int) -> ReplicationSession:
        """Unstarted session replicating with a peer on the network."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop discovery and abort running sessions."""
        ...
