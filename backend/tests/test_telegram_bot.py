import asyncio
from types import SimpleNamespace

import pytest
from telegram.error import TelegramError

from expense_assistant.domain.errors import AdapterUnavailable
from expense_assistant.telegram_bot import TelegramMediaFetcher, TelegramReplySender, to_inbound


def _update(text=None, photo=None, document=None, voice=None, message_id=10):
    message = SimpleNamespace(
        text=text,
        photo=photo or [],
        document=document,
        voice=voice,
        message_id=message_id,
    )
    return SimpleNamespace(
        effective_message=message,
        effective_chat=SimpleNamespace(id=42),
        effective_user=SimpleNamespace(full_name="Ana Perez", username="ana"),
    )


def test_text_update():
    inbound = to_inbound(_update(text="50 uber"))

    assert inbound.sender_channel_key == "telegram:42"
    assert inbound.kind == "text"
    assert inbound.text == "50 uber"
    assert inbound.message_id == "42-10"
    assert inbound.display_name == "Ana Perez"
    assert inbound.handle == "ana"


def test_photo_update_uses_largest_size():
    photo = [SimpleNamespace(file_id="small"), SimpleNamespace(file_id="large")]

    inbound = to_inbound(_update(photo=photo))

    assert inbound.kind == "image"
    assert inbound.image_ref == "large"
    assert inbound.text is None


def test_image_document_and_voice_updates():
    document = SimpleNamespace(file_id="doc-1", mime_type="image/png")
    assert to_inbound(_update(document=document)).image_ref == "doc-1"

    voice = SimpleNamespace(file_id="voice-1")
    inbound = to_inbound(_update(voice=voice))
    assert inbound.kind == "voice"
    assert inbound.voice_ref == "voice-1"


def test_update_without_message():
    update = SimpleNamespace(effective_message=None, effective_chat=None, effective_user=None)
    assert to_inbound(update) is None


class _Bot:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send_message(self, chat_id, text):
        if self.error:
            raise self.error
        self.sent.append((chat_id, text))

    async def get_file(self, file_id):
        if self.error:
            raise self.error

        async def download_as_bytearray():
            return bytearray(b"jpeg-bytes")

        return SimpleNamespace(file_path="photos/file_1.jpg", download_as_bytearray=download_as_bytearray)


def test_reply_sender_delivers_telegram_keys_only():
    bot = _Bot()

    async def scenario():
        sender = TelegramReplySender(bot)
        sender.notify("telegram:42", "hola")
        sender.notify("whatsapp:51999", "ignored")
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert bot.sent == [(42, "hola")]


def test_reply_sender_swallows_delivery_errors():
    bot = _Bot(error=TelegramError("blocked by user"))

    async def scenario():
        TelegramReplySender(bot).notify("telegram:42", "hola")
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert bot.sent == []


def test_media_fetcher():
    data, mime_type = asyncio.run(TelegramMediaFetcher(_Bot()).fetch_bytes("file-1"))
    assert data == b"jpeg-bytes"
    assert mime_type == "image/jpeg"

    with pytest.raises(AdapterUnavailable):
        asyncio.run(TelegramMediaFetcher(_Bot(error=TelegramError("gone"))).fetch_bytes("file-1"))
