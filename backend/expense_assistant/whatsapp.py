"""WhatsApp Cloud API client and webhook payload parsing."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from .config import Settings, get_settings
from .domain.entities import InboundMessage
from .domain.errors import AdapterUnavailable
from .identity import canonical_key

logger = logging.getLogger(__name__)

WHATSAPP_CHANNEL = "whatsapp"
WHATSAPP_OBJECT = "whatsapp_business_account"


class WhatsAppClient:
    def __init__(self, settings: Settings | None = None, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout=30.0, connect=10.0))

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._settings.whatsapp_token}"}

    async def send_text(self, to: str, text: str) -> None:
        url = f"{self._settings.whatsapp_api_url}/{self._settings.whatsapp_phone_number_id}/messages"
        response = await self._http.post(
            url,
            headers=self._headers,
            json={
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": text},
            },
        )
        response.raise_for_status()

    async def fetch_bytes(self, ref: str) -> tuple[bytes, str]:
        """Resolve a media id to its download URL, then download it."""
        try:
            meta = await self._http.get(f"{self._settings.whatsapp_api_url}/{ref}", headers=self._headers)
            meta.raise_for_status()
            info = meta.json()
            media = await self._http.get(info["url"], headers=self._headers)
            media.raise_for_status()
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise AdapterUnavailable(f"WhatsApp media download failed: {exc}") from exc
        mime_type = info.get("mime_type") or media.headers.get("content-type") or "application/octet-stream"
        return media.content, mime_type

    async def aclose(self) -> None:
        await self._http.aclose()


class WhatsAppReplySender:
    def __init__(self, client: WhatsAppClient) -> None:
        self._client = client
        self._tasks: set[asyncio.Task[None]] = set()

    def notify(self, channel_key: str, text: str) -> None:
        channel, _, number = channel_key.partition(":")
        if channel != WHATSAPP_CHANNEL or not number:
            logger.warning("Cannot deliver %r through WhatsApp", channel_key)
            return
        task = asyncio.get_running_loop().create_task(self._send(number, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, number: str, text: str) -> None:
        try:
            await self._client.send_text(number, text)
        except httpx.HTTPError as exc:
            logger.error("Failed to send WhatsApp message to %s: %s", number, exc)


def _contact_names(value: dict[str, Any]) -> dict[str, str]:
    names = {}
    for contact in value.get("contacts") or []:
        wa_id = contact.get("wa_id")
        name = (contact.get("profile") or {}).get("name")
        if wa_id and name:
            names[wa_id] = name
    return names


def parse_webhook(payload: dict[str, Any]) -> list[InboundMessage]:
    """Extract the text, image and voice messages from a Cloud API webhook body."""
    messages: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            names = _contact_names(value)
            for raw in value.get("messages") or []:
                sender = raw.get("from")
                message_id = raw.get("id")
                if not sender or not message_id:
                    continue
                kind = raw.get("type")
                common = {
                    "sender_channel_key": canonical_key(WHATSAPP_CHANNEL, sender),
                    "message_id": message_id,
                    "display_name": names.get(sender),
                }
                if kind == "text":
                    body = (raw.get("text") or {}).get("body")
                    messages.append(InboundMessage(kind="text", text=body, **common))
                elif kind == "image":
                    media_id = (raw.get("image") or {}).get("id")
                    messages.append(InboundMessage(kind="image", image_ref=media_id, **common))
                elif kind == "audio":
                    media_id = (raw.get("audio") or {}).get("id")
                    messages.append(InboundMessage(kind="voice", voice_ref=media_id, **common))
                else:
                    logger.info("Ignoring WhatsApp %s message from %s", kind, sender)
    return messages
