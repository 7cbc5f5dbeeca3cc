import logging
from typing import Any, Dict

from core.db import AsyncSessionLocal
from core.errors import UpstreamError
from core.logging_setup import log_step
from models.webhook_events import WebhookEvent
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

LOG_STEP = "WEBHOOKS"

SOURCES = ("whatsapp", "google_calendar", "n8n")


async def record_webhook_event(
    source: str, event_name: str, payload: Dict[str, Any], processed: bool = False
) -> int:
    """Stores a raw webhook payload and returns the new row id."""
    if source not in SOURCES:
        raise ValueError(f"Unknown webhook source: {source}")

    with log_step(LOG_STEP):
        try:
            async with AsyncSessionLocal() as session:
                event = WebhookEvent(
                    source=source,
                    event_name=event_name,
                    payload=payload,
                    processed=processed,
                )
                session.add(event)
                await session.commit()
                await session.refresh(event)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store {source} webhook '{event_name}': {e}")
            raise UpstreamError("Failed to store webhook event.") from e

        logger.info(f"Stored {source} webhook '{event_name}' as event {event.id}.")
        return event.id
