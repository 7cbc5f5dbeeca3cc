import logging

from core.authentication import (
    get_auth_client,
    get_auth_token_from_header,
    get_current_user,
)
from core.errors import UpstreamError, ValidationError
from core.logging_setup import log_step
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from services import profiles
from services.auth_service import AuthUser, SupabaseAuthClient
from services.formatting import is_valid_email

logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdateRequest(BaseModel):
    name: str | None = None


async def _display_name(user: AuthUser) -> str:
    profile = await profiles.get_profile(user.id)
    if profile is not None and profile.name:
        return profile.name
    return user.name


def create_auth_router() -> APIRouter:
    """
    Creates the REST API router for account management.
    Credentials and sessions live in Supabase Auth; only the profile row is local.
    """
    router = APIRouter(
        prefix="/api/auth",
    )
    LOG_STEP = "API-AUTH"

    @router.post("/register")
    async def register(
        request: RegisterRequest,
        auth_client: SupabaseAuthClient = Depends(get_auth_client),
    ):
        with log_step(LOG_STEP):
            if not request.email or not request.password or not request.name:
                raise ValidationError("Email, password and name are required")
            if not is_valid_email(request.email):
                raise ValidationError("Invalid email address")

            user = await auth_client.sign_up(
                request.email.strip(), request.password, request.name
            )
            await profiles.upsert_profile(user.id, request.name, user.email)
            logger.info(f"Registered user {user.id}.")

            return {
                "success": True,
                "message": "User registered successfully",
                "user": user.to_payload(),
            }

    @router.post("/login")
    async def login(
        request: LoginRequest,
        auth_client: SupabaseAuthClient = Depends(get_auth_client),
    ):
        with log_step(LOG_STEP):
            if not request.email or not request.password:
                raise ValidationError("Email and password are required")

            session = await auth_client.sign_in(request.email.strip(), request.password)
            user_data = session.get("user")
            if not user_data or not session.get("access_token"):
                raise UpstreamError("Auth service returned an incomplete session.")

            user = AuthUser.from_payload(user_data)
            user.name = await _display_name(user)
            logger.info(f"User {user.id} logged in.")

            return {
                "success": True,
                "user": user.to_payload(),
                "session": {
                    "access_token": session["access_token"],
                    "expires_at": session.get("expires_at"),
                },
            }

    @router.post("/logout")
    async def logout(
        token: str = Depends(get_auth_token_from_header),
        auth_client: SupabaseAuthClient = Depends(get_auth_client),
    ):
        with log_step(LOG_STEP):
            await auth_client.sign_out(token)
            return {"success": True, "message": "Logged out successfully"}

    @router.get("/verify")
    async def verify(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            user.name = await _display_name(user)
            return {"success": True, "user": user.to_payload()}

    @router.put("/profile")
    async def update_profile(
        request: ProfileUpdateRequest,
        token: str = Depends(get_auth_token_from_header),
        user: AuthUser = Depends(get_current_user),
        auth_client: SupabaseAuthClient = Depends(get_auth_client),
    ):
        with log_step(LOG_STEP):
            name = (request.name or "").strip()
            if not name:
                raise ValidationError("Name is required")

            updated = await profiles.update_profile_name(user.id, name)
            if not updated:
                await profiles.upsert_profile(user.id, name, user.email)
            await auth_client.update_user(token, {"name": name})
            logger.info(f"Profile updated for user {user.id}.")

            return {"success": True, "message": "Profile updated successfully"}

    return router
