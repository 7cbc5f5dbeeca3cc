import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal

from core.authentication import verify_webhook_secret
from core.logging_setup import log_step
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from services import webhook_events

logger = logging.getLogger(__name__)


class WebhookPayload(BaseModel):
    event: str
    data: Dict[str, Any]


class N8nPayload(BaseModel):
    action: Literal["send_whatsapp", "create_calendar_event"]
    data: Dict[str, Any]


def create_webhooks_router() -> APIRouter:
    """
    Creates the REST API router for inbound webhooks.
    Payloads are stored for later processing and never acted on inline.
    """
    router = APIRouter(
        prefix="/api/webhooks",
    )
    LOG_STEP = "API-WEBHOOKS"

    async def _store(source: str, event_name: str, body: BaseModel) -> dict:
        with log_step(LOG_STEP):
            logger.info(f"Received {source} webhook '{event_name}'.")
            event_id = await webhook_events.record_webhook_event(
                source, event_name, body.model_dump()
            )
            return {
                "success": True,
                "message": "Event received",
                "eventId": event_id,
            }

    @router.post("/whatsapp", dependencies=[Depends(verify_webhook_secret)])
    async def whatsapp_webhook(body: WebhookPayload):
        return await _store("whatsapp", body.event, body)

    @router.post("/calendar", dependencies=[Depends(verify_webhook_secret)])
    async def calendar_webhook(body: WebhookPayload):
        return await _store("google_calendar", body.event, body)

    @router.post("/n8n", dependencies=[Depends(verify_webhook_secret)])
    async def n8n_webhook(body: N8nPayload):
        return await _store("n8n", body.action, body)

    @router.get("/test")
    async def test():
        return {
            "success": True,
            "message": "Webhook API is working",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return router
