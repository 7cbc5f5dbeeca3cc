import logging

from core.authentication import get_current_user
from core.errors import ValidationError, envelope_error
from core.logging_setup import log_step
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from services.auth_service import AuthUser
from services.whatsapp_lifecycle import InstanceLifecycleManager

logger = logging.getLogger(__name__)


class SendMessageRequest(BaseModel):
    phone: str
    message: str


def create_whatsapp_router(manager: InstanceLifecycleManager) -> APIRouter:
    """
    Creates the REST API router for a user's WhatsApp channel.
    All state lives in the lifecycle manager; these handlers only translate.
    """
    router = APIRouter(
        prefix="/api/whatsapp",
    )
    LOG_STEP = "API-WHATSAPP"

    @router.post("/connect")
    async def connect(user: AuthUser = Depends(get_current_user)):
        """
        Starts (or resumes) the QR pairing flow. Returns immediately;
        the QR code becomes available from /qrcode shortly after.
        """
        with log_step(LOG_STEP):
            record = await manager.connect(user.id)
            return {
                "success": True,
                "message": "WhatsApp connection started",
                "status": record.status.value,
            }

    @router.get("/qrcode")
    async def qrcode(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            qr_code = manager.get_qr_code(user.id)
            if not qr_code:
                return envelope_error("QR code not available", 404)
            return {"success": True, "qrCode": qr_code}

    @router.get("/status")
    async def status(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            snapshot = await manager.check_connection(user.id)
            return {"success": True, "status": snapshot.to_payload()}

    @router.post("/send")
    async def send(
        request: SendMessageRequest,
        user: AuthUser = Depends(get_current_user),
    ):
        with log_step(LOG_STEP):
            if not request.phone or not request.message:
                raise ValidationError("Phone and message are required")
            result = await manager.send_message(user.id, request.phone, request.message)
            return {"success": True, "result": result}

    @router.post("/disconnect")
    async def disconnect(user: AuthUser = Depends(get_current_user)):
        with log_step(LOG_STEP):
            await manager.disconnect(user.id)
            return {"success": True, "message": "WhatsApp disconnected"}

    return router
