"""
FieldLog Backend: Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Every test gets its own SQLite file under tmp_path, so stores never
       leak between tests. HTTP tests drive the real app through httpx's
       ASGITransport; the lifespan does not run there, so services are
       attached to the app explicitly.

Fixture Hierarchy:
    test_settings          Settings pointing at a per-test database
    db_engine              async engine with tables created
    ├── store              SqlVersionStore on db_engine
    │   ├── observation_service
    │   ├── peer_engine    PeerReplicationEngine, zero retry waits
    │   └── test_client    AsyncClient on an app wired to store + peer_engine
    └── make_store         factory for additional stores (second device)
    fake_engine            scripted ReplicationEngine for orchestrator tests
"""

import os
import tempfile

# Override settings for testing BEFORE any fieldlog imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.mkdtemp(prefix="fieldlog_test_"), "default.db"
)
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["SYNC_PEERS"] = ""
os.environ["DEVICE_ID"] = "FieldLog_test"

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from fieldlog.config import Settings
from fieldlog.database import (
    create_engine_from_settings,
    create_session_factory,
    create_tables,
    dispose_engine,
)
from fieldlog.main import attach_services, create_app
from fieldlog.services.observation_service import ObservationService
from fieldlog.services.peer_sync import PeerReplicationEngine
from fieldlog.services.replication_base import (
    REPLICATION_STARTED,
    ReplicationEngine,
    ReplicationSession,
)
from fieldlog.services.sql_store import SqlVersionStore


def _sqlite_url(path) -> str:
    return f"sqlite+aiosqlite:///{path}"


# ══════════════════════════════════════════════════════════════════════════
# Store Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url=_sqlite_url(tmp_path / "fieldlog.db"),
        log_level="WARNING",
        device_id="FieldLog_test",
        sync_peers="",
    )


@pytest_asyncio.fixture
async def db_engine(test_settings):
    engine = create_engine_from_settings(test_settings)
    await create_tables(engine)
    yield engine
    await dispose_engine(engine)


@pytest.fixture
def store(db_engine):
    return SqlVersionStore(create_session_factory(db_engine))


@pytest_asyncio.fixture
async def make_store(tmp_path):
    """
    Factory for extra stores, e.g. the second device of a sync test.

    Usage:
        async def test_two_devices(store, make_store):
            other = await make_store("other")
    """
    engines = []

    async def _make(name: str) -> SqlVersionStore:
        engine = create_engine_from_settings(
            Settings(database_url=_sqlite_url(tmp_path / f"{name}.db"), log_level="WARNING")
        )
        await create_tables(engine)
        engines.append(engine)
        return SqlVersionStore(create_session_factory(engine))

    yield _make
    for engine in engines:
        await dispose_engine(engine)


@pytest.fixture
def observation_service(store):
    return ObservationService(store)


# ══════════════════════════════════════════════════════════════════════════
# Replication Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def peer_engine(store):
    engine = PeerReplicationEngine(
        store,
        device_id="FieldLog_test",
        listen_port=5000,
        retry_max_attempts=3,
        retry_min_wait=0,
        retry_max_wait=0,
    )
    yield engine
    await engine.close()


async def _default_runner(session: ReplicationSession) -> None:
    session.emit("progress", REPLICATION_STARTED)
    session.emit("progress", {"sofar": 1, "total": 1})


class FakeReplicationEngine(ReplicationEngine):
    """
    ReplicationEngine whose sessions run `self.runner`.

    Records every session it hands out and every replicate call, so tests
    can assert on what the orchestrator asked for.
    """

    def __init__(self):
        self._announcing = False
        self.runner: Callable[[ReplicationSession], Awaitable[None]] = _default_runner
        self.calls: List[tuple] = []
        self.sessions: List[ReplicationSession] = []
        self.closed = False

    @property
    def announcing(self) -> bool:
        return self._announcing

    async def announce(self) -> None:
        self._announcing = True

    async def unannounce(self) -> None:
        self._announcing = False

    def targets(self) -> List[Dict[str, Any]]:
        return [{"name": "tablet", "host": "10.0.0.2", "port": 5000, "type": "wifi"}]

    def _session(self, name: str) -> ReplicationSession:
        session = ReplicationSession(self.runner, name=name)
        self.sessions.append(session)
        return session

    def replicate_from_file(self, filename: str) -> ReplicationSession:
        self.calls.append(("file", filename))
        return self._session(f"file:{filename}")

    def sync_to_target(self, host: str, port: int) -> ReplicationSession:
        self.calls.append(("peer", host, port))
        return self._session(f"peer:{host}:{port}")

    async def close(self) -> None:
        self.closed = True
        self._announcing = False
        for session in self.sessions:
            session.abort()
        await asyncio.gather(*(s.wait() for s in self.sessions))


@pytest.fixture
def fake_engine():
    return FakeReplicationEngine()


# ══════════════════════════════════════════════════════════════════════════
# HTTP Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(test_settings, store, peer_engine):
    """
    HTTPX AsyncClient talking to an app wired to the per-test store.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    app = create_app(test_settings)
    attach_services(app, store, peer_engine)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_observation() -> Dict[str, Any]:
    return {
        "type": "observation",
        "lat": -0.5,
        "lon": -77.4,
        "tags": {"category": "river", "notes": "Water level high"},
        "attachments": [{"id": "photo-1.jpg"}],
    }


def legacy_record(key: str, version: str, value: Dict[str, Any],
                  links: Optional[List[str]] = None) -> Dict[str, Any]:
    return {"key": key, "version": version, "value": value, "links": links or []}


@pytest.fixture
def legacy():
    """Builder for raw version records, as found in archives and exchanges."""
    return legacy_record
