from fastapi import APIRouter
from fastapi.testclient import TestClient

from core.errors import NotConnectedError, NotFoundError, UpstreamError
from lib.apps import build_app


def _router() -> APIRouter:
    router = APIRouter(prefix="/boom")

    @router.get("/upstream")
    async def upstream():
        raise UpstreamError("gateway said no")

    @router.get("/not-connected")
    async def not_connected():
        raise NotConnectedError("WhatsApp is not connected")

    @router.get("/not-found")
    async def not_found():
        raise NotFoundError("QR code not available")

    @router.get("/crash")
    async def crash():
        raise RuntimeError("secret internals")

    return router


# Purpose: verify every error class renders as the success:false envelope with its status.
def test_app_errors_render_envelope():
    client = TestClient(build_app(_router()))

    upstream = client.get("/boom/upstream")
    not_connected = client.get("/boom/not-connected")
    not_found = client.get("/boom/not-found")

    assert upstream.status_code == 500
    assert upstream.json() == {"success": False, "message": "gateway said no"}
    assert not_connected.status_code == 200
    assert not_connected.json() == {"success": False, "message": "WhatsApp is not connected"}
    assert not_found.status_code == 404


# Purpose: verify unexpected exceptions become a generic 500 without leaking details.
def test_unhandled_error_is_generic():
    client = TestClient(build_app(_router()), raise_server_exceptions=False)

    response = client.get("/boom/crash")

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Internal server error"}


# Purpose: verify unknown routes also use the envelope.
def test_unknown_route_uses_envelope():
    client = TestClient(build_app(_router()))

    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Not Found"}
