import logging
import time

from core.logging_setup import setup_logging

setup_logging()

from core.config import settings

logger = logging.getLogger(__name__)

logger.info(f"Configuration loaded. Log level set to: {settings.LOGGING_LEVEL}")

from api.auth import create_auth_router
from api.calendar import create_calendar_router
from api.webhooks import create_webhooks_router
from api.whatsapp import create_whatsapp_router
from core import db
from core.errors import register_error_handlers
from core.http_client import close_http_client, init_http_client
from core.logging_setup import log_step
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from services.google_calendar import GoogleCalendarService
from services.integration_store import SqlIntegrationStore
from services.qr_cache import QrCodeCache
from services.whatsapp_gateway import WhatsAppGatewayClient
from services.whatsapp_lifecycle import InstanceLifecycleManager

app = FastAPI(
    title="Secretaria API",
    description="Account, WhatsApp and Google Calendar integrations for the Secretaria assistant.",
)

register_error_handlers(app)

cors_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials="*" not in cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000

    with log_step("HTTP"):
        message = f"{request.method} {request.url.path} - {response.status_code} ({duration_ms:.0f}ms)"
        if response.status_code >= 500:
            logger.error(message)
        elif response.status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)
    return response


integration_store = SqlIntegrationStore()

whatsapp_manager = InstanceLifecycleManager(
    store=integration_store,
    gateway=WhatsAppGatewayClient(
        base_url=settings.WHATSAPP_API_URL,
        api_key=settings.WHATSAPP_API_KEY,
        webhook_url=settings.WHATSAPP_WEBHOOK_URL,
    ),
    qr_cache=QrCodeCache(),
    instance_prefix=settings.WHATSAPP_INSTANCE_PREFIX,
    poll_interval=settings.WHATSAPP_POLL_INTERVAL,
    retry_interval=settings.WHATSAPP_POLL_RETRY_INTERVAL,
    poll_timeout=settings.WHATSAPP_POLL_TIMEOUT,
)

calendar_service = GoogleCalendarService(
    store=integration_store,
    client_id=settings.GOOGLE_CLIENT_ID,
    client_secret=settings.GOOGLE_CLIENT_SECRET,
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
)


@app.on_event("startup")
async def startup_event():
    """
    On application startup, initialize the database and the shared HTTP client.
    """
    await db.init_db()
    await init_http_client()
    if not calendar_service.is_configured():
        with log_step("STARTUP"):
            logger.warning("Google Calendar credentials are not set; calendar routes will fail.")


@app.on_event("shutdown")
async def shutdown_event():
    await whatsapp_manager.shutdown()
    await close_http_client()
    await db.close_db()


app.include_router(create_auth_router())

app.include_router(create_whatsapp_router(manager=whatsapp_manager))

app.include_router(create_calendar_router(calendar=calendar_service))

app.include_router(create_webhooks_router())


@app.get("/health")
async def health():
    return {"success": True, "status": "ok"}
