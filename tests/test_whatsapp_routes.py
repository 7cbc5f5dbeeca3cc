import pytest
from fastapi.testclient import TestClient

from api.whatsapp import create_whatsapp_router
from lib.apps import build_app
from lib.fakes import FakeGateway, InMemoryIntegrationStore
from services.integration_store import ConnectionStatus
from services.whatsapp_lifecycle import InstanceLifecycleManager


@pytest.fixture
def routes():
    store = InMemoryIntegrationStore()
    gateway = FakeGateway()
    # Poll tasks exit on their first tick; tests drive state through the routes.
    manager = InstanceLifecycleManager(
        store, gateway, instance_prefix="test", poll_interval=3600, poll_timeout=1
    )
    app = build_app(create_whatsapp_router(manager))
    with TestClient(app) as client:
        yield client, store, gateway


# Purpose: verify connect starts a session and reports it as connecting.
def test_connect_route(routes):
    client, store, gateway = routes

    response = client.post("/api/whatsapp/connect")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "connecting"
    assert store.get("user-1").status == ConnectionStatus.CONNECTING
    assert len(gateway.created) == 1


# Purpose: verify the QR route serves the cached code after connect and 404s before it.
def test_qrcode_route(routes):
    client, _, _ = routes

    missing = client.get("/api/whatsapp/qrcode")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "message": "QR code not available"}

    client.post("/api/whatsapp/connect")
    found = client.get("/api/whatsapp/qrcode")

    assert found.status_code == 200
    assert found.json()["qrCode"].startswith("data:image/png;base64,")


# Purpose: verify status reports the reconciled gateway state.
def test_status_route(routes):
    client, store, gateway = routes

    assert client.get("/api/whatsapp/status").json() == {
        "success": True,
        "status": {"connected": False, "status": "not_initialized"},
    }

    client.post("/api/whatsapp/connect")
    gateway.set_state(store.get("user-1").instance_name, ConnectionStatus.CONNECTED)

    assert client.get("/api/whatsapp/status").json() == {
        "success": True,
        "status": {"connected": True, "status": "connected"},
    }


# Purpose: verify sending while not connected answers success:false instead of an HTTP error.
def test_send_route_not_connected(routes):
    client, _, gateway = routes

    response = client.post(
        "/api/whatsapp/send", json={"phone": "+55 11 99999-0000", "message": "hi"}
    )

    assert response.status_code == 200
    assert response.json() == {"success": False, "message": "WhatsApp is not connected"}
    assert gateway.sent == []


# Purpose: verify the send route forwards digits-only numbers once connected.
def test_send_route_connected(routes):
    client, store, gateway = routes
    client.post("/api/whatsapp/connect")
    gateway.set_state(store.get("user-1").instance_name, ConnectionStatus.CONNECTED)

    response = client.post(
        "/api/whatsapp/send", json={"phone": "+55 11 99999-0000", "message": "hi"}
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert gateway.sent[0][1:] == ("5511999990000", "hi")


# Purpose: verify missing send fields are rejected with a 400 envelope.
def test_send_route_missing_fields(routes):
    client, _, _ = routes

    response = client.post("/api/whatsapp/send", json={"phone": "123"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "message" in body["message"]


# Purpose: verify disconnect with no session returns success:false saying not connected.
def test_disconnect_route_without_record(routes):
    client, _, _ = routes

    response = client.post("/api/whatsapp/disconnect")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert "not connected" in body["message"]


# Purpose: verify disconnect of a connected session removes it.
def test_disconnect_route_connected(routes):
    client, store, gateway = routes
    client.post("/api/whatsapp/connect")
    gateway.set_state(store.get("user-1").instance_name, ConnectionStatus.CONNECTED)

    response = client.post("/api/whatsapp/disconnect")

    assert response.json() == {"success": True, "message": "WhatsApp disconnected"}
    assert store.get("user-1") is None


# Purpose: verify routes reject requests without a bearer token.
def test_routes_require_bearer_token():
    manager = InstanceLifecycleManager(InMemoryIntegrationStore(), FakeGateway())
    app = build_app(create_whatsapp_router(manager), user=None)
    client = TestClient(app)

    response = client.get("/api/whatsapp/status")

    assert response.status_code == 401
    assert response.json()["success"] is False


# Purpose: verify gateway outages surface as a 500 envelope carrying the gateway message.
def test_connect_route_gateway_failure(routes):
    client, store, gateway = routes
    gateway.fail_create = True

    response = client.post("/api/whatsapp/connect")

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "WhatsApp gateway returned status 500",
    }
    assert store.get("user-1").status == ConnectionStatus.ERROR
