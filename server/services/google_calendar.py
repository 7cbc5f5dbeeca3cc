import logging
import time
import urllib.parse
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from auth.encryption import decrypt, decrypt_optional, encrypt, encrypt_optional
from core.errors import (
    AppError,
    AuthError,
    NotConnectedError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from core.http_client import get_http_client
from core.logging_setup import log_step, log_user

from .formatting import add_days, to_rfc3339, truncate
from .integration_store import ConnectionStatus, IntegrationRecord, Provider

logger = logging.getLogger(__name__)

LOG_STEP = "INT-GOOGLE"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]

REFRESH_MARGIN_SECONDS = 300
DEFAULT_LIST_DAYS = 30
DEFAULT_MAX_RESULTS = 10


def _event_path(event_id: str) -> str:
    return "/" + urllib.parse.quote(event_id, safe="")


class GoogleCalendarService:
    """
    OAuth2 connection and event forwarding for a user's primary Google calendar.
    Tokens are stored Fernet-encrypted in the user's google_calendar record.
    """

    def __init__(
        self,
        store,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._client = client
        self._clock = clock

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise UpstreamError("Google Calendar integration is not configured.")

    def get_auth_url(self, user_id: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": encrypt(user_id),
        }
        return f"{GOOGLE_AUTH_URL}?{urllib.parse.urlencode(params)}"

    def user_id_from_state(self, state: str) -> str:
        """Recovers the user id carried in the OAuth state parameter."""
        try:
            return decrypt(state)
        except AppError as e:
            raise AuthError("Invalid OAuth state") from e

    async def _post_token(self, data: Dict[str, str], rejected_message: str) -> Dict[str, Any]:
        try:
            resp = await self.client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.RequestError as e:
            logger.error(f"Network error contacting Google token endpoint: {e}")
            raise UpstreamError("Google token endpoint unreachable.") from e

        if resp.status_code != 200:
            logger.error(f"Google token endpoint returned {resp.status_code}: {resp.text}")
            if 400 <= resp.status_code < 500:
                raise ValidationError(rejected_message)
            raise UpstreamError("Google token endpoint failed.")
        return resp.json()

    async def exchange_code(self, user_id: str, code: str) -> IntegrationRecord:
        self._require_configured()
        if not code:
            raise ValidationError("Authorization code is required")

        with log_step(LOG_STEP), log_user(user_id):
            token_data = await self._post_token(
                {
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
                "Google rejected the authorization code.",
            )

            existing = await self.store.find(user_id, Provider.CALENDAR)
            refresh_token = token_data.get("refresh_token")
            encrypted_refresh = encrypt_optional(refresh_token)
            if encrypted_refresh is None and existing is not None:
                encrypted_refresh = existing.refresh_token

            record = await self.store.upsert(
                IntegrationRecord(
                    user_id=user_id,
                    provider=Provider.CALENDAR,
                    status=ConnectionStatus.CONNECTED,
                    access_token=encrypt(token_data["access_token"]),
                    refresh_token=encrypted_refresh,
                    expires_at=int(self._clock()) + int(token_data.get("expires_in", 3600)),
                )
            )
            logger.info("Google Calendar connected.")
            return record

    async def get_valid_token(self, user_id: str) -> str:
        """
        Returns an access token with at least five minutes of validity,
        refreshing it first when needed.
        """
        with log_step(LOG_STEP), log_user(user_id):
            record = await self.store.find(user_id, Provider.CALENDAR)
            if record is None or not record.access_token:
                raise NotConnectedError("Google Calendar is not connected")

            expires_at = record.expires_at or 0
            if self._clock() < (expires_at - REFRESH_MARGIN_SECONDS):
                return decrypt(record.access_token)

            refresh_token = decrypt_optional(record.refresh_token)
            if not refresh_token:
                await self._mark_error(user_id)
                raise NotConnectedError("Google Calendar authorization expired")

            try:
                token_data = await self._post_token(
                    {
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    },
                    "Google rejected the refresh token.",
                )
            except (UpstreamError, ValidationError) as e:
                logger.error(f"Failed to refresh Google token: {e}")
                await self._mark_error(user_id)
                raise NotConnectedError("Google Calendar authorization expired") from e

            new_access_token = token_data["access_token"]
            new_refresh_token = token_data.get("refresh_token") or refresh_token
            await self.store.update(
                user_id,
                Provider.CALENDAR,
                {
                    "access_token": encrypt(new_access_token),
                    "refresh_token": encrypt(new_refresh_token),
                    "expires_at": int(self._clock()) + int(token_data.get("expires_in", 3600)),
                    "status": ConnectionStatus.CONNECTED,
                },
            )
            logger.info("Refreshed Google access token.")
            return new_access_token

    async def _mark_error(self, user_id: str) -> None:
        await self.store.update(
            user_id, Provider.CALENDAR, {"status": ConnectionStatus.ERROR}
        )

    async def get_status(self, user_id: str) -> Dict[str, Any]:
        record = await self.store.find(user_id, Provider.CALENDAR)
        if record is None:
            return {"connected": False, "status": ConnectionStatus.DISCONNECTED.value}
        return {
            "connected": record.status == ConnectionStatus.CONNECTED,
            "status": record.status.value,
        }

    async def disconnect(self, user_id: str) -> bool:
        with log_step(LOG_STEP), log_user(user_id):
            record = await self.store.find(user_id, Provider.CALENDAR)
            if record is None:
                return False

            token = decrypt_optional(record.refresh_token or record.access_token)
            if token:
                try:
                    resp = await self.client.post(GOOGLE_REVOKE_URL, data={"token": token})
                    if resp.status_code != 200:
                        logger.warning(f"Google token revoke returned {resp.status_code}.")
                except httpx.RequestError as e:
                    logger.warning(f"Could not revoke Google token: {e}")

            deleted = await self.store.delete(user_id, Provider.CALENDAR)
            logger.info("Google Calendar disconnected.")
            return deleted

    async def _calendar_request(
        self,
        user_id: str,
        method: str,
        path: str = "",
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        access_token = await self.get_valid_token(user_id)
        url = f"{GOOGLE_EVENTS_URL}{path}"
        try:
            resp = await self.client.request(
                method,
                url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as e:
            with log_step(LOG_STEP):
                logger.error(f"Network error contacting Calendar API: {e}")
            raise UpstreamError("Google Calendar unreachable.") from e

        if resp.status_code in (404, 410):
            raise NotFoundError("Event not found")
        if resp.status_code >= 400:
            with log_step(LOG_STEP):
                logger.error(
                    f"Calendar API error {resp.status_code}: {truncate(resp.text, 300)}"
                )
            raise UpstreamError(f"Google Calendar returned status {resp.status_code}")

        if not resp.content:
            return None
        return resp.json()

    async def list_events(
        self,
        user_id: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        params = {
            "timeMin": time_min or to_rfc3339(now),
            "timeMax": time_max or to_rfc3339(add_days(now, DEFAULT_LIST_DAYS)),
            "maxResults": max_results or DEFAULT_MAX_RESULTS,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        data = await self._calendar_request(user_id, "GET", params=params) or {}
        return data.get("items", [])

    async def create_event(self, user_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        missing = [key for key in ("summary", "start", "end") if not event.get(key)]
        if missing:
            raise ValidationError(f"Missing required event fields: {', '.join(missing)}")
        return await self._calendar_request(user_id, "POST", json=event) or {}

    async def get_event(self, user_id: str, event_id: str) -> Dict[str, Any]:
        return await self._calendar_request(user_id, "GET", _event_path(event_id)) or {}

    async def update_event(
        self, user_id: str, event_id: str, event: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._calendar_request(user_id, "PUT", _event_path(event_id), json=event) or {}

    async def delete_event(self, user_id: str, event_id: str) -> None:
        await self._calendar_request(user_id, "DELETE", _event_path(event_id))
