import hmac
import logging

from core.config import settings
from core.errors import AuthError
from core.logging_setup import log_step, user_id_var
from fastapi import Depends, Header
from services.auth_service import AuthUser, SupabaseAuthClient

logger = logging.getLogger(__name__)

LOG_STEP = "SECURITY"

_auth_client: SupabaseAuthClient | None = None


def get_auth_client() -> SupabaseAuthClient:
    """Returns the process-wide Supabase Auth client."""
    global _auth_client
    if _auth_client is None:
        _auth_client = SupabaseAuthClient(settings.SUPABASE_URL, settings.SUPABASE_KEY)
    return _auth_client


def parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_auth_token_from_header(
    authorization: str | None = Header(None),
) -> str:
    """Extracts the Bearer token from the Authorization header."""
    if not authorization:
        with log_step(LOG_STEP):
            logger.warning("Auth failed: No Authorization header.")
        raise AuthError("Missing Authorization header")

    token = parse_bearer(authorization)
    if not token:
        with log_step(LOG_STEP):
            logger.warning("Auth failed: Invalid header format.")
        raise AuthError("Invalid Authorization header format. Expected 'Bearer <token>'")
    return token


async def get_current_user(
    token: str = Depends(get_auth_token_from_header),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> AuthUser:
    """
    Resolves the bearer token to a user by asking the auth service.
    Any rejection from the auth service is reported as 401.
    """
    try:
        user = await auth_client.get_user(token)
    except AuthError as e:
        with log_step(LOG_STEP):
            logger.warning(f"Auth failed: {e.message}")
        raise AuthError("Invalid token") from e

    user_id_var.set(user.id)
    return user


async def verify_webhook_secret(
    x_webhook_secret: str | None = Header(None),
    authorization: str | None = Header(None),
) -> None:
    """
    Accepts either X-Webhook-Secret or 'Authorization: Bearer <secret>'.
    When no secret is configured every webhook call is rejected.
    """
    expected = settings.WEBHOOK_SECRET
    if not expected:
        with log_step(LOG_STEP):
            logger.error("Webhook rejected: WEBHOOK_SECRET is not configured.")
        raise AuthError("Webhook secret is not configured")

    provided = x_webhook_secret or parse_bearer(authorization)
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        with log_step(LOG_STEP):
            logger.warning("Webhook rejected: invalid secret.")
        raise AuthError("Invalid webhook secret")
