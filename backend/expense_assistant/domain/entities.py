from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Union

MessageKind = Literal["text", "image", "voice"]


class DomainContext(str, Enum):
    """Hint passed to the extractor describing where the input came from."""

    BANK_EMAIL = "bankEmail"
    CHAT_FREEFORM = "chatFreeform"
    RECEIPT_PHOTO = "receiptPhoto"


@dataclass(frozen=True, slots=True)
class User:
    key: str
    name: str
    handle: str | None = None
    notification_email: str | None = None
    created_at: datetime | None = None

    @property
    def channel(self) -> str:
        return self.key.split(":", 1)[0]

    @property
    def raw_id(self) -> str:
        return self.key.split(":", 1)[-1]


@dataclass(frozen=True, slots=True)
class ExtractedExpenseCandidate:
    """An extracted-but-not-yet-persisted expense."""

    amount: Decimal
    currency: str | None = None
    category: str | None = None
    merchant: str | None = None
    description: str | None = None
    date: date | None = None
    card_last4: str | None = None
    confidence: float | None = None


@dataclass(frozen=True, slots=True)
class Expense:
    id: int
    user_key: str
    amount: Decimal
    currency: str
    category: str
    merchant: str
    description: str | None
    date: date
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class PendingDuplicate:
    existing_id: int
    candidate: ExtractedExpenseCandidate
    expires_at: float


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """Transport-neutral message handed to the pipeline by every channel adapter."""

    sender_channel_key: str
    kind: MessageKind
    message_id: str
    text: str | None = None
    image_ref: str | None = None
    voice_ref: str | None = None
    display_name: str | None = None
    handle: str | None = None

    @property
    def channel(self) -> str:
        return self.sender_channel_key.split(":", 1)[0]

    @property
    def raw_sender_id(self) -> str:
        return self.sender_channel_key.split(":", 1)[-1]


@dataclass(frozen=True, slots=True)
class InboundEmail:
    sender: str
    recipient: str
    subject: str
    body: str
    message_id: str


@dataclass(frozen=True, slots=True)
class TextInput:
    text: str
    currency_hint: str | None = None


@dataclass(frozen=True, slots=True)
class ImageInput:
    data: bytes
    mime_type: str
    currency_hint: str | None = None


ExtractionInput = Union[TextInput, ImageInput]


@dataclass(frozen=True, slots=True)
class Success:
    candidate: ExtractedExpenseCandidate


@dataclass(frozen=True, slots=True)
class Rejected:
    """The input carries no monetary transaction."""

    reason: str


@dataclass(frozen=True, slots=True)
class AdapterFailure:
    detail: str


ExtractionOutcome = Union[Success, Rejected, AdapterFailure]


@dataclass(frozen=True, slots=True)
class LinkCode:
    id: int
    code: str
    user_key: str
    display_name: str | None
    handle: str | None
    used: bool
    expires_at: datetime
