import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import services
from .config import get_settings
from .db import Base, engine
from .domain.errors import PersistenceError
from .migrations import run_migrations
from .pipeline import ReplySender
from .routers import bank_email, dashboard, whatsapp_webhook
from .telegram_bot import TelegramReplySender, build_application
from .whatsapp import WhatsAppClient, WhatsAppReplySender

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Expense Assistant API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dashboard.router, prefix=settings.api_prefix)
app.include_router(bank_email.router)
app.include_router(whatsapp_webhook.router)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage is temporarily unavailable."},
    )


async def _start_telegram() -> ReplySender:
    app.state.telegram = None
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is not configured; bank email notifications will only be logged.")
        return services.LoggingReplySender()

    telegram_app = build_application()
    await telegram_app.initialize()
    if settings.telegram_polling_in_api:
        await telegram_app.start()
        await telegram_app.updater.start_polling(drop_pending_updates=True)
        logger.info("Telegram bot polling started")
    app.state.telegram = telegram_app
    return TelegramReplySender(telegram_app.bot)


@app.on_event("startup")
async def on_startup() -> None:
    """Ensure tables exist and start the messaging transports."""
    Base.metadata.create_all(bind=engine)
    run_migrations(engine)

    app.state.email_pipeline = services.build_pipeline(await _start_telegram())

    whatsapp_client = WhatsAppClient(settings)
    app.state.whatsapp_client = whatsapp_client
    app.state.whatsapp_pipeline = services.build_pipeline(
        WhatsAppReplySender(whatsapp_client), whatsapp_client
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    telegram_app = getattr(app.state, "telegram", None)
    if telegram_app is not None:
        if telegram_app.updater and telegram_app.updater.running:
            await telegram_app.updater.stop()
        if telegram_app.running:
            await telegram_app.stop()
        await telegram_app.shutdown()
    whatsapp_client = getattr(app.state, "whatsapp_client", None)
    if whatsapp_client is not None:
        await whatsapp_client.aclose()


@app.get("/")
def health_check() -> dict[str, str]:
    return {"status": "ok"}
