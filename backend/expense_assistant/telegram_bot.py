"""Telegram transport: long-polling bot feeding the expense pipeline."""

from __future__ import annotations

import asyncio
import logging
import mimetypes

from telegram import Bot, Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    ContextTypes,
    MessageHandler,
    filters,
)

from . import services
from .config import get_settings
from .domain.entities import InboundMessage, MessageKind
from .domain.errors import AdapterUnavailable
from .identity import TELEGRAM_CHANNEL, canonical_key
from .pipeline import ExpensePipeline

logger = logging.getLogger(__name__)

settings = get_settings()

PIPELINE_KEY = "pipeline"


class TelegramReplySender:
    """Fire-and-forget replies; send failures are logged and never reach the pipeline."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot
        self._tasks: set[asyncio.Task[None]] = set()

    def notify(self, channel_key: str, text: str) -> None:
        channel, _, chat_id = channel_key.partition(":")
        if channel != TELEGRAM_CHANNEL or not chat_id:
            logger.warning("Cannot deliver %r through Telegram", channel_key)
            return
        task = asyncio.get_running_loop().create_task(self._send(chat_id, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, chat_id: str, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=int(chat_id), text=text)
        except TelegramError as exc:
            logger.error("Failed to send Telegram message to %s: %s", chat_id, exc)


class TelegramMediaFetcher:
    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def fetch_bytes(self, ref: str) -> tuple[bytes, str]:
        try:
            file = await self._bot.get_file(ref)
            data = bytes(await file.download_as_bytearray())
        except TelegramError as exc:
            raise AdapterUnavailable(f"Telegram file download failed: {exc}") from exc
        mime_type = mimetypes.guess_type(file.file_path or "")[0] or "application/octet-stream"
        return data, mime_type


def to_inbound(update: Update) -> InboundMessage | None:
    """Translate a Telegram update into the pipeline's message shape."""
    message = update.effective_message
    chat = update.effective_chat
    if message is None or chat is None:
        return None

    kind: MessageKind = "text"
    image_ref = voice_ref = None
    if message.photo:
        kind, image_ref = "image", message.photo[-1].file_id
    elif message.document and (message.document.mime_type or "").startswith("image/"):
        kind, image_ref = "image", message.document.file_id
    elif message.voice:
        kind, voice_ref = "voice", message.voice.file_id

    sender = update.effective_user
    return InboundMessage(
        sender_channel_key=canonical_key(TELEGRAM_CHANNEL, str(chat.id)),
        kind=kind,
        # Message ids are only unique within a chat.
        message_id=f"{chat.id}-{message.message_id}",
        text=message.text if kind == "text" else None,
        image_ref=image_ref,
        voice_ref=voice_ref,
        display_name=sender.full_name if sender else None,
        handle=sender.username if sender else None,
    )


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    inbound = to_inbound(update)
    if inbound is None:
        return
    pipeline: ExpensePipeline = context.bot_data[PIPELINE_KEY]
    try:
        await context.bot.send_chat_action(chat_id=update.effective_chat.id, action="typing")
    except TelegramError as exc:
        logger.debug("Chat action failed: %s", exc)
    await pipeline.handle(inbound)


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing Telegram update", exc_info=context.error)


def build_application(token: str | None = None) -> Application:
    token = token or settings.telegram_bot_token
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is missing from configuration.")

    application = ApplicationBuilder().token(token).build()
    application.bot_data[PIPELINE_KEY] = services.build_pipeline(
        TelegramReplySender(application.bot),
        TelegramMediaFetcher(application.bot),
    )

    application.add_handler(MessageHandler(filters.PHOTO, handle_message))
    application.add_handler(MessageHandler(filters.Document.IMAGE, handle_message))
    application.add_handler(MessageHandler(filters.VOICE, handle_message))
    # Commands go through the same router as free text.
    application.add_handler(MessageHandler(filters.TEXT, handle_message))
    application.add_error_handler(on_error)
    return application


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not settings.telegram_bot_token:
        raise SystemExit("Please set TELEGRAM_BOT_TOKEN in the environment to run the bot.")
    application = build_application()
    logger.info("Starting Telegram bot...")
    application.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    main()
