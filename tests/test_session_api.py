import httpx
import pytest
from fastapi.testclient import TestClient

from chargeledger.api import build_services, create_app
from chargeledger.errors import StoreError
from chargeledger.ledger import InMemoryLedger, LedgerHandle
from chargeledger.store import MemorySessionStore


async def start(client, ev_id="EV1", **extra):
    resp = await client.post("/api/sessions/start", json={"evId": ev_id, "powerRequired": 10, **extra})
    assert resp.status_code == 200
    return resp.json()


@pytest.mark.asyncio
async def test_start_returns_session_and_token(client):
    body = await start(client)

    assert body["ok"] is True
    assert body["session"]["status"] == "active"
    assert body["session"]["evId"] == "EV1"
    assert body["txId"] == "pending"
    assert body["queued"] is True
    assert body["eventKey"] == f"{body['session']['sessionId']}:SessionStarted:{body['queueId']}"
    assert isinstance(body["resumeToken"], str) and body["resumeToken"]


@pytest.mark.asyncio
async def test_full_flow_over_http(client):
    body = await start(client)
    sid = body["session"]["sessionId"]
    ids = {"evId": "EV1", "sessionId": sid}

    resp = await client.post("/api/sessions/pause", json=ids)
    assert resp.status_code == 200
    assert resp.json()["session"]["status"] == "disconnected"
    assert "resumeToken" not in resp.json()

    resp = await client.post("/api/sessions/pause", json=ids)
    assert resp.status_code == 409
    assert resp.json()["kind"] == "invalid_state"

    resp = await client.post("/api/sessions/resume", json={**ids, "resumeToken": "wrong"})
    assert resp.status_code == 401
    assert resp.json() == {"ok": False, "kind": "invalid_token", "error": "Invalid or revoked token"}

    resp = await client.post("/api/sessions/resume", json={**ids, "resumeToken": body["resumeToken"]})
    assert resp.status_code == 200
    rotated = resp.json()["resumeToken"]
    assert rotated != body["resumeToken"]

    resp = await client.post("/api/sessions/resume", json={**ids, "resumeToken": rotated})
    assert resp.status_code == 409
    assert resp.json()["kind"] == "already_active"

    resp = await client.post("/api/sessions/stop", json=ids)
    assert resp.status_code == 200
    assert resp.json()["session"]["status"] == "stopped"

    resp = await client.post("/api/sessions/stop", json=ids)
    assert resp.status_code == 409
    assert resp.json()["kind"] == "session_terminal"


@pytest.mark.asyncio
async def test_expired_session_answers_410(client):
    body = await start(client, hours=0)
    ids = {"evId": "EV1", "sessionId": body["session"]["sessionId"]}

    resp = await client.post("/api/sessions/pause", json=ids)
    assert resp.status_code == 410
    assert resp.json()["kind"] == "session_expired"

    resp = await client.post("/api/sessions/stop", json=ids)
    assert resp.status_code == 409
    assert resp.json()["error"] == "Session already expired"


@pytest.mark.asyncio
async def test_unknown_session_and_wrong_ev(client):
    body = await start(client)
    sid = body["session"]["sessionId"]

    resp = await client.post("/api/sessions/stop", json={"evId": "EV1", "sessionId": "missing"})
    assert resp.status_code == 404
    assert resp.json()["kind"] == "not_found"

    resp = await client.post("/api/sessions/stop", json={"evId": "EV2", "sessionId": sid})
    assert resp.status_code == 404


@pytest.mark.parametrize(
    "payload",
    [
        {"powerRequired": 10},
        {"evId": "EV1"},
        {"evId": "EV1", "powerRequired": "ten"},
        {"evId": "EV1", "powerRequired": "10"},
        {"evId": "EV1", "powerRequired": 10, "hours": -1},
    ],
)
@pytest.mark.asyncio
async def test_start_rejects_bad_payloads(client, payload, store):
    resp = await client.post("/api/sessions/start", json=payload)
    assert resp.status_code == 400
    assert resp.json()["ok"] is False
    assert resp.json()["kind"] == "validation_error"
    assert store.sessions == {}


@pytest.mark.asyncio
async def test_resume_requires_token(client):
    body = await start(client)
    resp = await client.post(
        "/api/sessions/resume", json={"evId": "EV1", "sessionId": body["session"]["sessionId"]}
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "resumeToken is required"


@pytest.mark.asyncio
async def test_get_session_snapshot(client, clock):
    body = await start(client, hours=1)
    sid = body["session"]["sessionId"]
    clock.advance(minutes=30)

    resp = await client.get(f"/api/sessions/{sid}", params={"evId": "EV1"})
    assert resp.status_code == 200
    session = resp.json()["session"]
    assert session["status"] == "active"
    assert session["remainingSecs"] == 1800

    resp = await client.get(f"/api/sessions/{sid}")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_queue_endpoints(client, queue):
    body = await start(client)
    sid = body["session"]["sessionId"]

    resp = await client.get("/api/queue/status")
    assert resp.status_code == 200
    assert resp.json()["queue"]["pending"] == 1
    assert resp.json()["ledgerAvailable"] is True

    await queue.drain()

    resp = await client.get("/api/queue/events", params={"sessionId": sid})
    [event] = resp.json()["events"]
    assert event["eventType"] == "SessionStarted"
    assert event["status"] == "confirmed"
    assert event["eventKey"] == body["eventKey"]
    assert event["txId"].startswith("tx-")

    resp = await client.get("/api/queue/events")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_retry_endpoint_resets_dead_rows(client, store):
    body = await start(client)
    queue_id = body["queueId"]
    await store.mark_processing(queue_id)
    await store.mark_failed(queue_id, "dead", "gone", store.queue[queue_id].next_retry_at)

    resp = await client.post("/api/queue/retry", json={"sessionId": "someone-else"})
    assert resp.json() == {"ok": True, "retriedCount": 0}

    resp = await client.post("/api/queue/retry")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "retriedCount": 1}
    assert store.queue[queue_id].status == "pending"


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True

    resp = await client.get("/health/db")
    assert resp.json() == {"ok": True, "db": "memory"}


class DownStore(MemorySessionStore):
    async def ping(self):
        return False

    async def get_session(self, session_id, ev_id):
        raise StoreError("database is down")


@pytest.mark.asyncio
async def test_store_outage_answers_503(clock):
    services = build_services(DownStore(), LedgerHandle(InMemoryLedger()), run_queue=False, clock=clock)
    transport = httpx.ASGITransport(app=create_app(services))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/health/db")
        assert resp.status_code == 503
        assert resp.json() == {"ok": False, "db": "memory"}

        resp = await client.post("/api/sessions/pause", json={"evId": "EV1", "sessionId": "S1"})
        assert resp.status_code == 503
        assert resp.json()["kind"] == "store_unavailable"


def test_websocket_receives_transitions(services):
    app = create_app(services)
    with TestClient(app) as tc:
        with tc.websocket_connect("/ws/events") as ws:
            assert ws.receive_json()["eventName"] == "SSE_CONNECTED"

            resp = tc.post("/api/sessions/start", json={"evId": "EV1", "powerRequired": 7})
            assert resp.status_code == 200

            message = ws.receive_json()
            assert message["eventName"] == "SessionStarted"
            assert message["txId"] == "pending"


class BrokenReadStore(MemorySessionStore):
    async def get_session(self, session_id, ev_id):
        raise RuntimeError("unexpected row shape")

    async def list_queue_events(self, session_id):
        raise RuntimeError("unexpected row shape")


@pytest.mark.asyncio
async def test_unexpected_read_errors_answer_500(clock):
    services = build_services(BrokenReadStore(), LedgerHandle(InMemoryLedger()), run_queue=False, clock=clock)
    transport = httpx.ASGITransport(app=create_app(services))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/sessions/S1", params={"evId": "EV1"})
        assert resp.status_code == 500
        assert resp.json() == {"detail": "unexpected row shape"}

        resp = await client.get("/api/queue/events", params={"sessionId": "S1"})
        assert resp.status_code == 500
        assert resp.json() == {"detail": "unexpected row shape"}
