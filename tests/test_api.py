"""
HTTP API tests against the ASGI app, with the engine wired to the test
database and cache.
"""

from decimal import Decimal

import httpx
import pytest
from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient

from mining_engine.api.main import create_app, status_for
from mining_engine.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    MiningEngineException,
    OwnerNotFoundError,
    PersistenceError,
    ValidationError,
)
from mining_engine.websocket.connection_manager import ConnectionManager
from mining_engine.websocket.websocket_handler import websocket_handler


@pytest.fixture
async def client(engine):
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_owner(client, deposit="100") -> int:
    response = await client.post("/api/v1/admin/owners", json={"username": "api-miner"})
    assert response.status_code == 201
    owner_id = response.json()["data"]["owner_id"]
    if deposit:
        response = await client.post(
            f"/api/v1/admin/wallets/{owner_id}/adjust",
            json={"amount": deposit, "log_type": "deposit"},
        )
        assert response.status_code == 200
    return owner_id


@pytest.mark.parametrize("exc,expected", [
    (ValidationError("bad"), 400),
    (InsufficientBalanceError(Decimal("2"), Decimal("1")), 400),
    (OwnerNotFoundError(1), 404),
    (ConcurrencyConflictError("busy"), 409),
    (PersistenceError("down"), 503),
    (MiningEngineException("other"), 500),
])
def test_error_status_mapping(exc, expected):
    assert status_for(exc) == expected


@pytest.mark.asyncio
async def test_purchase_project_and_claim(client, clock):
    owner_id = await create_owner(client)

    response = await client.post(f"/api/v1/slots/{owner_id}", json={"principal": "100"})
    assert response.status_code == 201
    slot_id = response.json()["data"]["slot"]["slot_id"]

    clock.advance(days=3, hours=12)
    response = await client.get(f"/api/v1/earnings/{owner_id}")
    assert response.status_code == 200
    projection = response.json()["data"]
    assert Decimal(projection["total_accrued"]) == Decimal("3.5")
    assert [slot["slot_id"] for slot in projection["per_slot"]] == [slot_id]

    response = await client.post(f"/api/v1/earnings/{owner_id}/claim")
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert Decimal(body["data"]["claimed_amount"]) == Decimal("3.5")
    assert Decimal(body["data"]["new_balance"]) == Decimal("3.5")

    # nothing left: still 200, but not a success
    response = await client.post(f"/api/v1/earnings/{owner_id}/claim", json={"slot_ids": [slot_id]})
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["message"]
    assert Decimal(body["data"]["claimed_amount"]) == Decimal("0")


@pytest.mark.asyncio
async def test_extend_and_upgrade(client, clock):
    owner_id = await create_owner(client, deposit="200")
    response = await client.post(f"/api/v1/slots/{owner_id}", json={"principal": "100"})
    slot_id = response.json()["data"]["slot"]["slot_id"]

    response = await client.post(f"/api/v1/slots/{owner_id}/{slot_id}/extend")
    assert response.status_code == 200
    assert Decimal(response.json()["data"]["balance"]) == Decimal("99")

    response = await client.post(
        f"/api/v1/slots/{owner_id}/{slot_id}/upgrade", json={"amount": "50"}
    )
    assert response.status_code == 200
    assert Decimal(response.json()["data"]["slot"]["principal"]) == Decimal("150")

    response = await client.get(f"/api/v1/slots/{owner_id}")
    assert len(response.json()["data"]["slots"]) == 1


@pytest.mark.asyncio
async def test_error_responses(client):
    owner_id = await create_owner(client, deposit="10")

    response = await client.get("/api/v1/earnings/987654")
    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"

    response = await client.get("/api/v1/earnings/0")
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "INVALID_OWNER_ID"

    response = await client.post(f"/api/v1/earnings/{owner_id}/claim", json={"slot_ids": []})
    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"

    response = await client.post(f"/api/v1/slots/{owner_id}", json={"principal": "100"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "INSUFFICIENT_BALANCE"
    assert Decimal(body["details"]["available"]) == Decimal("10")

    response = await client.post(f"/api/v1/slots/{owner_id}/no-such-slot/extend")
    assert response.status_code == 404

    response = await client.post(
        f"/api/v1/admin/wallets/{owner_id}/adjust",
        json={"amount": "5", "log_type": "claim"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_admin_processing(client, clock):
    owner_id = await create_owner(client)
    await client.post(f"/api/v1/slots/{owner_id}", json={"principal": "100"})

    clock.advance(days=2)
    response = await client.post("/api/v1/admin/processing/run-persistence")
    assert response.status_code == 200
    assert response.json()["data"]["checkpointed"] == 1

    clock.advance(days=6)
    response = await client.get("/api/v1/admin/processing/status")
    status = response.json()["data"]
    assert status["expired_slots"] == 1
    assert status["scheduler"] is None

    response = await client.post("/api/v1/admin/processing/run-expiry")
    assert response.status_code == 200
    stats = response.json()["data"]
    assert stats["processed_slots"] == 1
    assert Decimal(stats["total_credited"]) == Decimal("7")

    response = await client.get(f"/api/v1/admin/wallets/{owner_id}")
    assert Decimal(response.json()["data"]["balance"]) == Decimal("7")

    response = await client.get(f"/api/v1/admin/wallets/{owner_id}/reconcile")
    assert response.json()["data"]["consistent"] is True

    response = await client.get("/api/v1/admin/stats/live")
    live = response.json()["data"]
    assert live["slots_finalized"] == 1
    assert live["checkpoints_written"] == 1


@pytest.mark.asyncio
async def test_response_headers(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Request-ID" in response.headers

    response = await client.get("/", headers={"X-Request-ID": "req-1"})
    assert response.headers["X-Request-ID"] == "req-1"


def ws_app(manager: ConnectionManager) -> FastAPI:
    app = FastAPI()

    @app.websocket("/ws/{owner_id}")
    async def endpoint(websocket: WebSocket, owner_id: int):
        await websocket_handler(websocket, owner_id, client_id="client-1", manager=manager)

    return app


def test_websocket_ping_and_subscriptions():
    manager = ConnectionManager(cleanup_interval=3600)
    client = TestClient(ws_app(manager))

    with client.websocket_connect("/ws/7") as websocket:
        hello = websocket.receive_json()
        assert hello["type"] == "connection_status"
        assert hello["data"]["owner_id"] == 7

        websocket.send_json({"action": "ping"})
        assert websocket.receive_json()["data"] == {"pong": True}

        websocket.send_json({"action": "unsubscribe", "events": ["slot_update"]})
        reply = websocket.receive_json()
        assert reply["type"] == "unsubscription"
        assert "slot_update" not in reply["data"]["subscribed"]
        assert "earnings_claimed" in reply["data"]["subscribed"]

        websocket.send_json({"action": "subscribe", "events": ["nonsense"]})
        assert websocket.receive_json()["data"]["code"] == "INVALID_EVENTS"

        websocket.send_text("not json")
        assert websocket.receive_json()["data"]["code"] == "INVALID_JSON"

        websocket.send_json({"action": "dance"})
        assert websocket.receive_json()["data"]["code"] == "UNKNOWN_ACTION"
