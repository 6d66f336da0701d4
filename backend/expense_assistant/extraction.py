"""Extraction adapter over the OpenAI completion API.

Every response is parsed exactly once here into an ``ExtractionOutcome`` so the
rest of the pipeline never sees raw model output.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from openai import OpenAI, OpenAIError

from .config import Settings, get_settings
from .domain.categories import CATEGORY_VALUES, LEGACY_CATEGORY_ALIASES, SUPPORTED_CURRENCIES
from .domain.entities import (
    AdapterFailure,
    DomainContext,
    ExtractedExpenseCandidate,
    ExtractionInput,
    ExtractionOutcome,
    ImageInput,
    Rejected,
    Success,
)
from .domain.errors import AdapterUnavailable, ValidationRejected

logger = logging.getLogger(__name__)

NO_AMOUNT_REASON = "No monetary amount found."

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_CENTS = Decimal("0.01")

_CATEGORY_LIST = "|".join(CATEGORY_VALUES)
_CURRENCY_LIST = "|".join(SUPPORTED_CURRENCIES)

_CATEGORY_GUIDE = (
    "CATEGORIES:\n"
    "- food: restaurants, supermarkets, markets, food delivery (Wong, Metro, Plaza Vea, Tottus, Tambo, Rappi)\n"
    "- transport: uber, taxi, bus, fuel, tolls, parking, flights\n"
    "- health: pharmacies (Inkafarma, Mifarma), clinics, doctors, hospitals\n"
    "- entertainment: cinema, streaming, bars, gym, concerts\n"
    "- utilities: electricity, water, internet, phone, software, subscriptions, hairdresser\n"
    "- shopping: clothes, electronics, department stores (Saga, Ripley, Oechsle), Amazon, MercadoLibre, gifts\n"
    "- education: courses, books, university, languages\n"
    "- home: rent, furniture, cleaning, repairs, pets\n"
    "- other: ONLY when nothing else fits"
)


def _chat_prompt(default_currency: str) -> str:
    return (
        "Extract expense information from natural-language text. Respond ONLY with JSON:\n"
        f'{{"amount": number, "currency": "{_CURRENCY_LIST}", "category": "{_CATEGORY_LIST}", '
        '"merchant": "string", "description": "string|null"}\n\n'
        "RULES:\n"
        "- amount: the number of the amount, no symbols. If there is no clear amount respond null\n"
        '- currency: detect from words like "soles", "pesos", "dólares" or ISO codes. '
        f"Default: {default_currency}\n"
        "- category: categorize from context\n"
        "- merchant: name of the shop or service, capitalized\n"
        "- description: relevant extra text or null\n\n"
        f"{_CATEGORY_GUIDE}\n\n"
        "Examples:\n"
        '"mercado wong 97 soles!" -> {"amount": 97, "currency": "PEN", "category": "food", "merchant": "Wong", "description": null}\n'
        f'"gasté 50 en uber" -> {{"amount": 50, "currency": "{default_currency}", "category": "transport", "merchant": "Uber", "description": null}}\n'
        '"netflix 15 dólares" -> {"amount": 15, "currency": "USD", "category": "entertainment", "merchant": "Netflix", "description": null}\n'
        '"hola como estas" -> null'
    )


def _receipt_prompt(currency_hint: str | None) -> str:
    hint = ""
    if currency_hint:
        hint = (
            f"\n\nIMPORTANT: this user usually records expenses in {currency_hint}. "
            f"If there is no clear evidence of another currency, use {currency_hint}."
        )
    return (
        "Extract information from payment receipts. Respond ONLY with JSON:\n"
        f'{{"amount": number, "currency": "{_CURRENCY_LIST}", "category": "{_CATEGORY_LIST}", '
        '"merchant": "string", "description": "string|null", "date": "YYYY-MM-DD", "confidence": 0.0-1.0}\n\n'
        "CRITICAL RULES to detect the currency:\n"
        "1. Bogotá, Colombia, NIT, Cámara de Comercio, Credibanco -> ALWAYS COP\n"
        "2. Santiago, Chile, RUT, SII, boleta electrónica -> CLP\n"
        "3. Lima, Perú, RUC, SUNAT, S/. -> PEN\n"
        "4. México, RFC, SAT -> MXN\n"
        "5. A bare $ with no other context and an amount >1000 is probably COP or CLP (NOT USD)\n"
        '6. USD only when it explicitly says "USD", "dollars", or it is a US receipt\n\n'
        "Priority: geographic context > currency symbol"
        f"{hint}\n\n"
        f"{_CATEGORY_GUIDE}\n\n"
        'If the image is not a payment receipt respond: {"error": "short reason"}'
    )


def _bank_email_prompt(default_currency: str) -> str:
    return (
        "Extract the bank transaction from an Interbank (Peru) notification email. Respond ONLY with JSON:\n"
        f'{{"amount": number, "currency": "PEN|USD", "merchant": "string", "category": "{_CATEGORY_LIST}", '
        '"date": "YYYY-MM-DD", "cardLast4": "string|null"}\n\n'
        "RULES:\n"
        "- amount: the transaction amount (positive number)\n"
        f"- currency: PEN for soles, USD for dollars. Default: {default_currency}\n"
        "- merchant: merchant name, capitalized and clean\n"
        "- category: categorize from the merchant\n"
        "- date: transaction date in YYYY-MM-DD\n"
        "- cardLast4: last 4 card digits when present\n\n"
        f"{_CATEGORY_GUIDE}\n\n"
        "If this is not a valid transaction notification respond: null\n\n"
        "Examples:\n"
        '- "Consumo aprobado por S/ 45.90 en WONG CENCOSUD..." -> {"amount": 45.90, "currency": "PEN", "merchant": "Wong", ...}\n'
        '- "Pago con tu tarjeta ****1234 por S/ 25.00 en UBER*TRIP..." -> {"amount": 25.00, "currency": "PEN", "merchant": "Uber", "cardLast4": "1234", ...}'
    )


def normalize_image_mime(mime_type: str | None, file_hint: str | None = None) -> str:
    """Coerce a transport-reported MIME type to one the vision model accepts."""
    if mime_type in SUPPORTED_IMAGE_TYPES:
        return mime_type
    hint = (file_hint or "").lower()
    if ".png" in hint:
        return "image/png"
    if ".webp" in hint:
        return "image/webp"
    if ".gif" in hint:
        return "image/gif"
    return "image/jpeg"


def _parse_date(raw: Any) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        return None


def _parse_confidence(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return min(max(value, 0.0), 1.0)


def _parse_card(raw: Any) -> str | None:
    if not raw:
        return None
    digits = re.sub(r"\D", "", str(raw))
    return digits[-4:] or None


def _optional_text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def candidate_from_payload(data: dict[str, Any]) -> ExtractedExpenseCandidate:
    """Validate a decoded model payload. Raises ValidationRejected on a missing or non-positive amount."""
    raw_amount = data.get("amount")
    if raw_amount is None or isinstance(raw_amount, bool):
        raise ValidationRejected(NO_AMOUNT_REASON)
    try:
        amount = Decimal(str(raw_amount).replace(",", "")).quantize(_CENTS)
    except InvalidOperation as exc:
        raise ValidationRejected(f"Invalid amount: {raw_amount!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationRejected(f"Amount must be positive, got {raw_amount!r}")

    currency = _optional_text(data.get("currency"))
    category = _optional_text(data.get("category"))
    if category:
        category = category.lower()
        category = LEGACY_CATEGORY_ALIASES.get(category, category)

    return ExtractedExpenseCandidate(
        amount=amount,
        currency=currency.upper() if currency else None,
        category=category,
        merchant=_optional_text(data.get("merchant")),
        description=_optional_text(data.get("description")),
        date=_parse_date(data.get("date")),
        card_last4=_parse_card(data.get("cardLast4") or data.get("card_last4")),
        confidence=_parse_confidence(data.get("confidence")),
    )


def parse_completion(content: str | None) -> ExtractionOutcome:
    if content is None or not content.strip():
        return AdapterFailure("Empty response from the extraction service.")
    text = content.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return AdapterFailure(f"Non-JSON response: {text[:120]}")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            return AdapterFailure(f"Malformed JSON response: {text[:120]}")

    if data is None:
        return Rejected(NO_AMOUNT_REASON)
    if not isinstance(data, dict):
        return AdapterFailure(f"Unexpected payload type: {type(data).__name__}")
    if data.get("error"):
        return Rejected(str(data["error"]))

    try:
        return Success(candidate_from_payload(data))
    except ValidationRejected as exc:
        return Rejected(str(exc))


def build_openai_client(settings: Settings) -> OpenAI | None:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not configured; extraction will be unavailable.")
        return None
    return OpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.ai_timeout_seconds,
        max_retries=0,
    )


class OpenAIExtractor:
    """Turns text or receipt images into expense candidates."""

    def __init__(self, client: OpenAI | None, settings: Settings | None = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OpenAIExtractor":
        settings = settings or get_settings()
        return cls(build_openai_client(settings), settings)

    def extract(self, source: ExtractionInput, context: DomainContext) -> ExtractionOutcome:
        try:
            content = self._complete(source, context)
        except AdapterUnavailable as exc:
            logger.error("Extraction service failed (%s): %s", context.value, exc)
            return AdapterFailure(str(exc))

        logger.info("Extraction response (%s): %s", context.value, content)
        outcome = parse_completion(content)
        if isinstance(outcome, AdapterFailure):
            logger.error("Unusable extraction response (%s): %s", context.value, outcome.detail)
        return outcome

    def _complete(self, source: ExtractionInput, context: DomainContext) -> str | None:
        if self._client is None:
            raise AdapterUnavailable("Extraction service is not configured.")

        default_currency = source.currency_hint or self._settings.default_currency
        if isinstance(source, ImageInput):
            encoded = base64.b64encode(source.data).decode("ascii")
            mime_type = normalize_image_mime(source.mime_type)
            model = self._settings.vision_model
            max_tokens = 300
            messages: list[dict[str, Any]] = [
                {"role": "system", "content": _receipt_prompt(source.currency_hint)},
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                        {"type": "text", "text": "Extract the receipt information."},
                    ],
                },
            ]
        elif context is DomainContext.BANK_EMAIL:
            model = self._settings.text_model
            max_tokens = 200
            messages = [
                {"role": "system", "content": _bank_email_prompt(default_currency)},
                {"role": "user", "content": source.text},
            ]
        else:
            model = self._settings.text_model
            max_tokens = 150
            messages = [
                {"role": "system", "content": _chat_prompt(default_currency)},
                {"role": "user", "content": source.text},
            ]

        try:
            response = self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=0,
            )
        except OpenAIError as exc:
            raise AdapterUnavailable(str(exc)) from exc

        if not response.choices:
            raise AdapterUnavailable("Extraction service returned no choices.")
        return response.choices[0].message.content


_AUDIO_FILENAMES = {
    "audio/ogg": "voice.ogg",
    "audio/mpeg": "voice.mp3",
    "audio/mp4": "voice.m4a",
    "audio/wav": "voice.wav",
    "audio/webm": "voice.webm",
}


class OpenAITranscriber:
    """Speech-to-text for voice notes; the transcript is routed like typed text."""

    def __init__(self, client: OpenAI | None, settings: Settings | None = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OpenAITranscriber":
        settings = settings or get_settings()
        return cls(build_openai_client(settings), settings)

    def transcribe(self, data: bytes, mime_type: str) -> str:
        if self._client is None:
            raise AdapterUnavailable("Transcription service is not configured.")
        base_type = (mime_type or "").split(";")[0].strip().lower()
        filename = _AUDIO_FILENAMES.get(base_type, "voice.ogg")
        try:
            transcription = self._client.audio.transcriptions.create(
                model=self._settings.transcription_model,
                file=(filename, data, base_type or "audio/ogg"),
                language=self._settings.transcription_language,
            )
        except OpenAIError as exc:
            raise AdapterUnavailable(str(exc)) from exc
        text = (transcription.text or "").strip()
        logger.info("Transcription: %s", text)
        return text
