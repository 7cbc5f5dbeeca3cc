import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from core.errors import AuthError, UpstreamError, ValidationError
from core.http_client import get_http_client
from core.logging_setup import log_step

from .formatting import truncate

logger = logging.getLogger(__name__)

LOG_STEP = "AUTH-SERVICE"


@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthUser":
        metadata = payload.get("user_metadata") or {}
        return cls(
            id=payload["id"],
            email=payload.get("email"),
            name=metadata.get("name") or "",
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name}


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"status {response.status_code}"
    if not isinstance(data, dict):
        return str(data)
    return (
        data.get("msg")
        or data.get("error_description")
        or data.get("message")
        or data.get("error")
        or f"status {response.status_code}"
    )


class SupabaseAuthClient:
    """
    Thin client for the Supabase Auth (GoTrue) REST API.
    Credentials and sessions are owned entirely by the auth service.
    """

    def __init__(self, base_url: str, api_key: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {access_token or self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        client_error=AuthError,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/auth/v1{path}"
        try:
            response = await self.client.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(access_token),
            )
        except httpx.RequestError as e:
            with log_step(LOG_STEP):
                logger.error(f"Network error contacting auth service: {e}")
            raise UpstreamError("Auth service unreachable.") from e

        if 400 <= response.status_code < 500:
            raise client_error(_error_message(response))
        if response.status_code >= 500:
            with log_step(LOG_STEP):
                logger.error(
                    f"Auth service error {response.status_code}: {truncate(response.text, 300)}"
                )
            raise UpstreamError(_error_message(response))

        if not response.content:
            return {}
        return response.json()

    async def sign_up(self, email: str, password: str, name: str) -> AuthUser:
        data = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": {"name": name}},
            client_error=ValidationError,
        )
        user = data.get("user") or data
        if not user.get("id"):
            raise UpstreamError("Auth service did not return a user.")
        return AuthUser(id=user["id"], email=user.get("email", email), name=name)

    async def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        """Returns the raw session payload (access_token, expires_at, user, ...)."""
        return await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )

    async def sign_out(self, access_token: str) -> None:
        await self._request("POST", "/logout", access_token=access_token)

    async def get_user(self, access_token: str) -> AuthUser:
        data = await self._request("GET", "/user", access_token=access_token)
        if not data.get("id"):
            raise AuthError("Invalid token")
        return AuthUser.from_payload(data)

    async def update_user(self, access_token: str, metadata: Dict[str, Any]) -> AuthUser:
        data = await self._request(
            "PUT",
            "/user",
            access_token=access_token,
            json={"data": metadata},
            client_error=ValidationError,
        )
        return AuthUser.from_payload(data)
