import json

import httpx
import pytest

from services.integration_store import ConnectionStatus
from services.whatsapp_gateway import (
    GatewayError,
    WhatsAppGatewayClient,
    extract_qr_code,
    map_gateway_state,
)


class RecordingTransport:
    """Collects requests and answers each with a canned (status, body) pair."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.get((request.method, request.url.path), (200, {}))
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


def _client(responses, webhook_url=""):
    transport = RecordingTransport(responses)
    http = httpx.AsyncClient(transport=httpx.MockTransport(transport))
    gateway = WhatsAppGatewayClient(
        "https://gateway.test/", "secret-key", webhook_url=webhook_url, client=http
    )
    return gateway, transport


# Purpose: verify gateway connection states map onto integration statuses.
def test_map_gateway_state():
    assert map_gateway_state("open") == ConnectionStatus.CONNECTED
    assert map_gateway_state("connecting") == ConnectionStatus.CONNECTING
    assert map_gateway_state("close") == ConnectionStatus.DISCONNECTED
    assert map_gateway_state("CLOSE") == ConnectionStatus.DISCONNECTED
    assert map_gateway_state("weird") == ConnectionStatus.ERROR
    assert map_gateway_state(None) == ConnectionStatus.ERROR


# Purpose: verify QR payloads are found in each response shape the gateway uses.
def test_extract_qr_code_shapes():
    assert extract_qr_code({"base64": "data:a"}) == "data:a"
    assert extract_qr_code({"qrcode": {"base64": "data:b"}}) == "data:b"
    assert extract_qr_code({"qrcode": "data:c"}) == "data:c"
    assert extract_qr_code({"code": "2@abc"}) == "2@abc"
    assert extract_qr_code({}) is None
    assert extract_qr_code(None) is None


# Purpose: verify instance creation sends the instance name, QR flag, webhook and api key.
@pytest.mark.asyncio
async def test_create_instance_payload():
    gateway, transport = _client(
        {("POST", "/instance/create"): (201, {"qrcode": {"base64": "data:qr"}})},
        webhook_url="https://app.test/api/webhooks/whatsapp",
    )

    data = await gateway.create_instance("secretaria-u1-1")

    request = transport.requests[0]
    body = json.loads(request.content)
    assert request.headers["apikey"] == "secret-key"
    assert body["instanceName"] == "secretaria-u1-1"
    assert body["qrcode"] is True
    assert body["webhook"] == "https://app.test/api/webhooks/whatsapp"
    assert extract_qr_code(data) == "data:qr"


# Purpose: verify the webhook block is omitted when no webhook URL is configured.
@pytest.mark.asyncio
async def test_create_instance_without_webhook():
    gateway, transport = _client({})

    await gateway.create_instance("secretaria-u1-1")

    body = json.loads(transport.requests[0].content)
    assert "webhook" not in body


# Purpose: verify connection state is read from both nested and flat responses.
@pytest.mark.asyncio
async def test_get_connection_state_shapes():
    gateway, _ = _client(
        {
            ("GET", "/instance/connectionState/nested"): (200, {"instance": {"state": "open"}}),
            ("GET", "/instance/connectionState/flat"): (200, {"state": "connecting"}),
        }
    )

    assert await gateway.get_connection_state("nested") == ConnectionStatus.CONNECTED
    assert await gateway.get_connection_state("flat") == ConnectionStatus.CONNECTING


# Purpose: verify a 404 on the instance means it was never created.
@pytest.mark.asyncio
async def test_get_connection_state_not_found():
    gateway, _ = _client(
        {("GET", "/instance/connectionState/missing"): (404, {"error": "Not Found"})}
    )

    assert await gateway.get_connection_state("missing") == ConnectionStatus.NOT_INITIALIZED


# Purpose: verify send_text posts the number, delay options and text body.
@pytest.mark.asyncio
async def test_send_text_payload():
    gateway, transport = _client(
        {("POST", "/message/sendText/inst"): (201, {"key": {"id": "abc"}})}
    )

    result = await gateway.send_text("inst", "5511999990000", "hi")

    body = json.loads(transport.requests[0].content)
    assert body == {
        "number": "5511999990000",
        "options": {"delay": 1200, "presence": "composing"},
        "textMessage": {"text": "hi"},
    }
    assert result == {"key": {"id": "abc"}}


# Purpose: verify logout and delete hit the expected DELETE endpoints.
@pytest.mark.asyncio
async def test_logout_and_delete_paths():
    gateway, transport = _client({})

    await gateway.logout("inst")
    await gateway.delete_instance("inst")

    assert [(r.method, r.url.path) for r in transport.requests] == [
        ("DELETE", "/instance/logout/inst"),
        ("DELETE", "/instance/delete/inst"),
    ]


# Purpose: verify non-2xx responses raise GatewayError with the status attached.
@pytest.mark.asyncio
async def test_error_status_raises_gateway_error():
    gateway, _ = _client({("POST", "/message/sendText/inst"): (500, "boom")})

    with pytest.raises(GatewayError) as exc_info:
        await gateway.send_text("inst", "1", "hi")

    assert exc_info.value.gateway_status == 500
    assert exc_info.value.is_not_connected is False


# Purpose: verify a logout rejected for a missing session is recognised as "not connected".
@pytest.mark.asyncio
async def test_logout_not_connected_detection():
    gateway, _ = _client(
        {
            ("DELETE", "/instance/logout/inst"): (
                400,
                {"status": 400, "error": "Bad Request", "response": {"message": ["The \"inst\" instance is not connected"]}},
            )
        }
    )

    with pytest.raises(GatewayError) as exc_info:
        await gateway.logout("inst")

    assert exc_info.value.is_not_connected is True


# Purpose: verify transport failures surface as GatewayError rather than raw httpx errors.
@pytest.mark.asyncio
async def test_network_error_raises_gateway_error():
    def _fail(request):
        raise httpx.ConnectError("refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(_fail))
    gateway = WhatsAppGatewayClient("https://gateway.test", "key", client=http)

    with pytest.raises(GatewayError):
        await gateway.get_qr_code("inst")
