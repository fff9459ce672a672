"""
FieldLog Backend: Peer Replication Engine Tests
=================================================

What:  PeerReplicationEngine sessions against real stores, archive files
       under tmp_path and mocked or in-process peers.

What we test:
    ✅ Archive sync: export to a new file, import + rewrite of an existing one
    ✅ Corrupt archives end the session with an error
    ✅ Network sync: retries on transport errors only, HTTP errors not retried
    ✅ Two devices converge through the /api/sync/exchange endpoint
    ✅ Targets: configured peers plus peers seen while announcing
"""

import json

import httpx
import pytest
from httpx import ASGITransport

from fieldlog.exceptions import ReplicationError
from fieldlog.main import attach_services, create_app
from fieldlog.schemas.sync import ExchangeRequest, VersionRecordModel
from fieldlog.services.observation_service import ObservationService
from fieldlog.services.peer_sync import EXCHANGE_PATH, PeerReplicationEngine
from fieldlog.services.replication_base import REPLICATION_STARTED


async def run(session):
    """Start `session`, wait for it and return the events it emitted."""
    events = []
    session.on("progress", lambda data=None: events.append(("progress", data)))
    session.on("end", lambda: events.append(("end", None)))
    session.on("error", lambda err: events.append(("error", err)))
    session.start()
    await session.wait()
    return events


def write_archive(path, records):
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")


def read_archive(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def mock_engine(store, handler, **kwargs):
    return PeerReplicationEngine(
        store,
        device_id="FieldLog_test",
        listen_port=5000,
        retry_max_attempts=3,
        retry_min_wait=0,
        retry_max_wait=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestArchiveSync:

    @pytest.mark.asyncio
    async def test_export_to_new_archive(self, peer_engine, observation_service, tmp_path):
        created = await observation_service.create({"type": "observation"})
        path = tmp_path / "archive.jsonl"

        events = await run(peer_engine.replicate_from_file(str(path)))

        assert events[0] == ("progress", REPLICATION_STARTED)
        assert events[-1] == ("end", None)
        [record] = read_archive(path)
        assert record["key"] == created["id"]
        assert record["version"] == created["version"]
        assert not (tmp_path / "archive.jsonl.tmp").exists()

    @pytest.mark.asyncio
    async def test_import_and_rewrite(self, peer_engine, observation_service, store, legacy, tmp_path):
        local = await observation_service.create({"type": "observation"})
        path = tmp_path / "archive.jsonl"
        write_archive(path, [
            legacy("remote", "r1", {"type": "observation", "schemaVersion": 3}),
            legacy("remote", "r2", {"type": "observation", "schemaVersion": 3}, ["r1"]),
        ])

        events = await run(peer_engine.replicate_from_file(str(path)))

        assert ("progress", {"direction": "import", "sofar": 2, "total": 2}) in events
        assert events[-1] == ("end", None)
        assert list(await store.get("remote")) == ["r2"]
        keys = {r["key"] for r in read_archive(path)}
        assert keys == {"remote", local["id"]}

    @pytest.mark.asyncio
    async def test_import_in_batches(self, store, legacy, tmp_path):
        engine = PeerReplicationEngine(store, device_id="d", import_batch_size=1)
        path = tmp_path / "archive.jsonl"
        write_archive(path, [legacy("a", "v1", {"n": 1}), legacy("b", "v2", {"n": 2})])

        events = await run(engine.replicate_from_file(str(path)))

        imports = [data for name, data in events if isinstance(data, dict) and data.get("direction") == "import"]
        assert [i["sofar"] for i in imports] == [1, 2]

    @pytest.mark.asyncio
    async def test_corrupt_archive(self, peer_engine, store, legacy, tmp_path):
        path = tmp_path / "archive.jsonl"
        path.write_text(json.dumps(legacy("a", "v1", {"n": 1})) + "\n{broken\n", encoding="utf-8")

        events = await run(peer_engine.replicate_from_file(str(path)))

        name, err = events[-1]
        assert name == "error"
        assert isinstance(err, ReplicationError)
        assert "line 2" in err.message
        assert await store.export_versions() == []


class TestNetworkSync:

    @pytest.mark.asyncio
    async def test_exchange_success(self, store, observation_service, legacy):
        created = await observation_service.create({"type": "observation"})
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200, json={
                "device_id": "FieldLog_tablet",
                "records": [legacy("remote", "r1", {"type": "observation"})],
            })

        engine = mock_engine(store, handler)
        events = await run(engine.sync_to_target("tablet.local", 5001))

        assert events[-1] == ("end", None)
        [request] = received
        assert request.url.path == EXCHANGE_PATH
        body = json.loads(request.content)
        assert body["device_id"] == "FieldLog_test"
        assert body["port"] == 5000
        assert [r["version"] for r in body["records"]] == [created["version"]]
        assert list(await store.get("remote")) == ["r1"]
        assert {"name": "FieldLog_tablet", "host": "tablet.local", "port": 5001, "type": "wifi"} \
            in engine.targets()

    @pytest.mark.asyncio
    async def test_http_error_not_retried(self, store):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={"error": "replication_error"})

        events = await run(mock_engine(store, handler).sync_to_target("h", 1))

        name, err = events[-1]
        assert name == "error"
        assert "HTTP 503" in err.message
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, store):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        events = await run(mock_engine(store, handler).sync_to_target("h", 1))

        name, err = events[-1]
        assert name == "error"
        assert isinstance(err, ReplicationError)
        assert err.message == "Could not reach peer h:1"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, store):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"device_id": "peer", "records": []})

        events = await run(mock_engine(store, handler).sync_to_target("h", 1))

        assert events[-1] == ("end", None)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_malformed_response(self, store):
        def handler(request):
            return httpx.Response(200, text="not json")

        events = await run(mock_engine(store, handler).sync_to_target("h", 1))

        name, err = events[-1]
        assert name == "error"
        assert "Malformed sync response" in err.message


class TestAcceptExchange:

    @pytest.mark.asyncio
    async def test_refused_when_not_announcing(self, peer_engine):
        with pytest.raises(ReplicationError):
            await peer_engine.accept_exchange(ExchangeRequest(device_id="x"), "10.0.0.9")

    @pytest.mark.asyncio
    async def test_accept_records_peer(self, store):
        engine = PeerReplicationEngine(
            store, device_id="FieldLog_test", static_peers=[("10.0.0.2", 5000)]
        )
        await engine.announce()

        response = await engine.accept_exchange(
            ExchangeRequest(
                device_id="FieldLog_peer",
                port=5001,
                records=[VersionRecordModel(key="k", version="v1", value={"n": 1})],
            ),
            "10.0.0.9",
        )

        assert response.device_id == "FieldLog_test"
        assert response.records == []
        assert list(await store.get("k")) == ["v1"]
        hosts = {(t["host"], t["port"], t["name"]) for t in engine.targets()}
        assert hosts == {("10.0.0.2", 5000, "10.0.0.2:5000"), ("10.0.0.9", 5001, "FieldLog_peer")}


class TestTwoDevices:

    @pytest.mark.asyncio
    async def test_devices_converge(self, store, make_store, test_settings):
        tablet_store = await make_store("tablet")
        tablet_engine = PeerReplicationEngine(
            tablet_store, device_id="FieldLog_tablet", listen_port=5001
        )
        await tablet_engine.announce()
        tablet_app = create_app(test_settings)
        attach_services(tablet_app, tablet_store, tablet_engine)

        phone_engine = PeerReplicationEngine(
            store,
            device_id="FieldLog_phone",
            listen_port=5000,
            retry_min_wait=0,
            retry_max_wait=0,
            transport=ASGITransport(app=tablet_app),
        )
        phone_obs = await ObservationService(store).create({"type": "observation", "ref": "phone"})
        tablet_obs = await ObservationService(tablet_store).create(
            {"type": "observation", "ref": "tablet"}
        )

        events = await run(phone_engine.sync_to_target("tablet.local", 5001))

        assert events[-1] == ("end", None)
        for s in (store, tablet_store):
            listed = await ObservationService(s).list()
            assert {o["id"] for o in listed} == {phone_obs["id"], tablet_obs["id"]}
        assert any(t["name"] == "FieldLog_phone" for t in tablet_engine.targets())

        await phone_engine.close()
        await tablet_engine.close()
