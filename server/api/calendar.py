import logging
from typing import Any, Dict, Optional

from core.authentication import get_current_user
from core.errors import NotConnectedError, ValidationError
from core.logging_setup import log_step
from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel
from services.auth_service import AuthUser
from services.google_calendar import GoogleCalendarService

logger = logging.getLogger(__name__)


class AuthCodeRequest(BaseModel):
    code: str


def create_calendar_router(calendar: GoogleCalendarService) -> APIRouter:
    """
    Creates the REST API router for a user's Google Calendar.
    Event bodies are passed through to Google unchanged.
    """
    router = APIRouter(
        prefix="/api/google-calendar",
    )
    LOG_STEP = "API-CALENDAR"

    @router.get("/status")
    async def status(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            result = await calendar.get_status(user.id)
            return {"success": True, **result}

    @router.get("/auth-url")
    async def auth_url(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            return {"success": True, "authUrl": calendar.get_auth_url(user.id)}

    @router.post("/auth-code")
    async def auth_code(
        request: AuthCodeRequest,
        user: AuthUser = Depends(get_current_user),
    ):
        with log_step(LOG_STEP):
            await calendar.exchange_code(user.id, request.code.strip())
            return {"success": True, "message": "Google Calendar connected"}

    @router.get("/callback")
    async def callback(code: str = Query(""), state: str = Query("")):
        """
        OAuth redirect target. The user is identified by the encrypted
        state parameter because the browser carries no bearer token here.
        """
        with log_step(LOG_STEP):
            if not code or not state:
                raise ValidationError("Missing code or state")
            user_id = calendar.user_id_from_state(state)
            await calendar.exchange_code(user_id, code)
            return {"success": True, "message": "Google Calendar connected"}

    @router.post("/disconnect")
    async def disconnect(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            if not await calendar.disconnect(user.id):
                raise NotConnectedError("Google Calendar is not connected")
            return {"success": True, "message": "Google Calendar disconnected"}

    @router.get("/events")
    async def list_events(
        timeMin: Optional[str] = Query(None),
        timeMax: Optional[str] = Query(None),
        maxResults: Optional[int] = Query(None, ge=1, le=2500),
        user: AuthUser = Depends(get_current_user),
    ):
        with log_step(LOG_STEP):
            events = await calendar.list_events(user.id, timeMin, timeMax, maxResults)
            return {"success": True, "events": events}

    @router.post("/events")
    async def create_event(
        event: Dict[str, Any] = Body(...),
        user: AuthUser = Depends(get_current_user),
    ):
        with log_step(LOG_STEP):
            created = await calendar.create_event(user.id, event)
            logger.info(f"Created calendar event {created.get('id')}.")
            return {"success": True, "event": created}

    @router.get("/events/{event_id}")
    async def get_event(event_id: str, user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            return {"success": True, "event": await calendar.get_event(user.id, event_id)}

    @router.put("/events/{event_id}")
    async def update_event(
        event_id: str,
        event: Dict[str, Any] = Body(...),
        user: AuthUser = Depends(get_current_user),
    ):
        with log_step(LOG_STEP):
            updated = await calendar.update_event(user.id, event_id, event)
            return {"success": True, "event": updated}

    @router.delete("/events/{event_id}")
    async def delete_event(event_id: str, user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            await calendar.delete_event(user.id, event_id)
            return {"success": True, "message": "Event deleted"}

    return router
