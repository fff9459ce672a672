"""
FieldLog Backend: API Endpoint Tests
======================================

What:  Drives the FastAPI app over HTTP (httpx ASGITransport) with a real
       per-test store and replication engine.

What we test:
    ✅ Observation CRUD and convert, including error status codes
    ✅ Structured error bodies carry the request ID
    ✅ Sync announce / targets / exchange
    ✅ GET /api/sync/start streams newline-delimited events
"""

import json

import httpx
import pytest


def ndjson(response):
    return [json.loads(line) for line in response.text.splitlines() if line]


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store"] == "connected"
        assert body["announcing"] is False


class TestObservationRoutes:

    @pytest.mark.asyncio
    async def test_create_and_read(self, test_client, sample_observation):
        created = await test_client.post("/api/observations", json=sample_observation)
        assert created.status_code == 200
        obs = created.json()

        listed = await test_client.get("/api/observations")
        single = await test_client.get(f"/api/observations/{obs['id']}")

        assert listed.json() == [obs]
        assert single.json() == [obs]

    @pytest.mark.asyncio
    async def test_get_unknown_is_empty_list(self, test_client):
        response = await test_client.get("/api/observations/missing")
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_malformed_body(self, test_client):
        response = await test_client.post(
            "/api/observations",
            content=b"{not json",
            headers={"Content-Type": "application/json", "X-Request-ID": "req-42"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "json_parse_error"
        assert body["request_id"] == "req-42"
        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_invalid_fields(self, test_client):
        response = await test_client.post("/api/observations", json={"type": "node"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_fields"
        assert body["message"] == "Observation must be of type `observation`"

    @pytest.mark.asyncio
    async def test_update_flow(self, test_client):
        obs = (await test_client.post("/api/observations", json={"type": "observation"})).json()
        payload = {"id": obs["id"], "version": obs["version"], "type": "observation"}

        first = await test_client.put(f"/api/observations/{obs['id']}", json={**payload, "ref": "a"})
        stale = await test_client.put(f"/api/observations/{obs['id']}", json={**payload, "ref": "b"})

        assert first.status_code == 200
        assert first.json()["ref"] == "a"
        assert stale.status_code == 409
        assert stale.json()["error"] == "no_version"

    @pytest.mark.asyncio
    async def test_update_id_mismatch(self, test_client):
        response = await test_client.put(
            "/api/observations/abc",
            json={"id": "other", "version": "v1", "type": "observation"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "type_mismatch"

    @pytest.mark.asyncio
    async def test_update_without_version(self, test_client):
        response = await test_client.put(
            "/api/observations/abc", json={"id": "abc", "type": "observation"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_delete(self, test_client):
        obs = (await test_client.post("/api/observations", json={"type": "observation"})).json()

        response = await test_client.delete(f"/api/observations/{obs['id']}")

        assert response.json() == {"deleted": True}
        assert (await test_client.get(f"/api/observations/{obs['id']}")).json() == []

    @pytest.mark.asyncio
    async def test_convert(self, test_client):
        obs = (await test_client.post("/api/observations", json={"type": "observation"})).json()

        first = await test_client.put(f"/api/observations/to-element/{obs['id']}")
        second = await test_client.put(f"/api/observations/to-element/{obs['id']}")

        assert first.status_code == 200
        assert first.json() == second.json()
        [current] = (await test_client.get(f"/api/observations/{obs['id']}")).json()
        assert current["tags"]["element_id"] == first.json()["id"]

    @pytest.mark.asyncio
    async def test_convert_unknown(self, test_client):
        response = await test_client.put("/api/observations/to-element/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestSyncRoutes:

    @pytest.mark.asyncio
    async def test_announce_unannounce(self, test_client):
        assert (await test_client.get("/api/sync/announce")).status_code == 200
        assert (await test_client.get("/health")).json()["announcing"] is True

        assert (await test_client.get("/api/sync/unannounce")).status_code == 200
        assert (await test_client.get("/health")).json()["announcing"] is False

    @pytest.mark.asyncio
    async def test_targets(self, test_client):
        response = await test_client.get("/api/sync/targets")
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_start_without_target(self, test_client):
        response = await test_client.get("/api/sync/start", params={"host": "10.0.0.2"})

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert ndjson(response) == [
            {"topic": "replication-error", "message": "Requires filename or host and port"}
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("port", ["abc", "", "70000", "-1"])
    async def test_start_with_unusable_port(self, test_client, port):
        response = await test_client.get(
            "/api/sync/start", params={"host": "10.0.0.2", "port": port}
        )

        assert response.status_code == 400
        assert ndjson(response) == [
            {"topic": "replication-error", "message": "Requires filename or host and port"}
        ]

    @pytest.mark.asyncio
    async def test_start_with_file(self, test_client, tmp_path):
        await test_client.post("/api/observations", json={"type": "observation"})
        path = tmp_path / "archive.jsonl"

        response = await test_client.get("/api/sync/start", params={"filename": str(path)})

        assert response.status_code == 200
        events = ndjson(response)
        assert events[0]["topic"] == "replication-started"
        assert events[-1]["topic"] == "replication-complete"
        assert all(e["topic"] == "replication-progress" for e in events[1:-1])
        assert len(path.read_text(encoding="utf-8").splitlines()) == 1

    @pytest.mark.asyncio
    async def test_start_with_unreachable_peer(self, test_client, peer_engine):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        peer_engine._transport = httpx.MockTransport(refuse)

        response = await test_client.get(
            "/api/sync/start", params={"host": "10.0.0.2", "port": 5001}
        )

        events = ndjson(response)
        assert response.status_code == 200
        assert events[-1] == {
            "topic": "replication-error",
            "message": "Could not reach peer 10.0.0.2:5001",
        }

    @pytest.mark.asyncio
    async def test_exchange_requires_announce(self, test_client):
        response = await test_client.post(
            "/api/sync/exchange", json={"device_id": "FieldLog_peer", "records": []}
        )
        assert response.status_code == 503
        assert response.json()["error"] == "replication_error"

    @pytest.mark.asyncio
    async def test_exchange(self, test_client):
        await test_client.get("/api/sync/announce")
        obs = (await test_client.post("/api/observations", json={"type": "observation"})).json()

        response = await test_client.post("/api/sync/exchange", json={
            "device_id": "FieldLog_peer",
            "port": 5001,
            "records": [{"key": "remote", "version": "r1", "value": {"type": "observation"}}],
        })

        assert response.status_code == 200
        body = response.json()
        assert body["device_id"] == "FieldLog_test"
        assert [r["key"] for r in body["records"]] == [obs["id"]]
        ids = {o["id"] for o in (await test_client.get("/api/observations")).json()}
        assert ids == {obs["id"], "remote"}
        targets = (await test_client.get("/api/sync/targets")).json()
        assert targets == [
            {"name": "FieldLog_peer", "host": "127.0.0.1", "port": 5001, "type": "wifi"}
        ]
