import logging
from typing import Any, Dict, Optional

import httpx
from core.errors import UpstreamError
from core.http_client import get_http_client
from core.logging_setup import log_step

from .formatting import truncate
from .integration_store import ConnectionStatus

logger = logging.getLogger(__name__)

LOG_STEP = "WA-GATEWAY"

GATEWAY_STATES = {
    "open": ConnectionStatus.CONNECTED,
    "connecting": ConnectionStatus.CONNECTING,
    "close": ConnectionStatus.DISCONNECTED,
    "closed": ConnectionStatus.DISCONNECTED,
}

NOT_CONNECTED_MARKERS = ("not connected", "not found", "does not exist")

SEND_DELAY_MS = 1200


class GatewayError(UpstreamError):
    """A messaging gateway call failed or returned a non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.gateway_status = status_code
        self.body = body

    @property
    def is_not_connected(self) -> bool:
        """True when the gateway refused because the instance has no session."""
        if self.gateway_status == 404:
            return True
        if self.gateway_status in (400, 409):
            lowered = self.body.lower()
            return any(marker in lowered for marker in NOT_CONNECTED_MARKERS)
        return False


def extract_qr_code(data: Optional[Dict[str, Any]]) -> Optional[str]:
    """Reads the QR payload from a connect or create response."""
    if not data:
        return None
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        data = qrcode
        qrcode = None
    return data.get("base64") or qrcode or data.get("code") or None


def map_gateway_state(raw_state: Optional[str]) -> ConnectionStatus:
    if not raw_state:
        return ConnectionStatus.ERROR
    return GATEWAY_STATES.get(raw_state.lower(), ConnectionStatus.ERROR)


class WhatsAppGatewayClient:
    """
    Evolution API client. Every method is a single HTTP request;
    retries are left to the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        webhook_url: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webhook_url = webhook_url
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    def is_configured(self) -> bool:
        return bool(self.base_url) and bool(self.api_key)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        if not self.is_configured():
            raise GatewayError("WhatsApp gateway is not configured.")

        url = f"{self.base_url}{path}"
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}

        try:
            response = await self.client.request(method, url, json=json, headers=headers)
        except httpx.RequestError as e:
            with log_step(LOG_STEP):
                logger.warning(f"Network error calling gateway {method} {path}: {e}")
            raise GatewayError(f"WhatsApp gateway unreachable: {e}") from e

        if allow_not_found and response.status_code == 404:
            return None

        if response.status_code >= 400:
            with log_step(LOG_STEP):
                logger.warning(
                    f"Gateway {method} {path} returned {response.status_code}: {truncate(response.text, 300)}"
                )
            raise GatewayError(
                f"WhatsApp gateway returned status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def create_instance(self, instance_name: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "instanceName": instance_name,
            "qrcode": True,
        }
        if self.webhook_url:
            payload["webhook"] = self.webhook_url
            payload["webhook_by_events"] = False
            payload["events"] = ["CONNECTION_UPDATE", "QRCODE_UPDATED", "MESSAGES_UPSERT"]

        with log_step(LOG_STEP):
            logger.info(f"Creating gateway instance {instance_name}.")
        return await self._request("POST", "/instance/create", json=payload) or {}

    async def get_connection_state(self, instance_name: str) -> ConnectionStatus:
        data = await self._request(
            "GET",
            f"/instance/connectionState/{instance_name}",
            allow_not_found=True,
        )
        if data is None:
            return ConnectionStatus.NOT_INITIALIZED

        instance = data.get("instance")
        raw_state = instance.get("state") if isinstance(instance, dict) else None
        if raw_state is None:
            raw_state = data.get("state")
        return map_gateway_state(raw_state)

    async def get_qr_code(self, instance_name: str) -> Optional[str]:
        data = await self._request("GET", f"/instance/connect/{instance_name}")
        return extract_qr_code(data)

    async def send_text(self, instance_name: str, phone: str, text: str) -> Dict[str, Any]:
        payload = {
            "number": phone,
            "options": {"delay": SEND_DELAY_MS, "presence": "composing"},
            "textMessage": {"text": text},
        }
        return await self._request(
            "POST", f"/message/sendText/{instance_name}", json=payload
        ) or {}

    async def logout(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/instance/logout/{instance_name}") or {}

    async def delete_instance(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/instance/delete/{instance_name}") or {}
