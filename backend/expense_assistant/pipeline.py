"""Transport-neutral expense pipeline shared by every inbound channel.

identity -> inbound dedup -> intent routing -> extraction -> normalization ->
duplicate check -> persistence -> reply. Every pipeline error is turned into a
single reply here; the only silent outcomes are already-processed messages and
bank emails that match no user.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Callable, Protocol

from . import formatter
from .cache import InboundDeduplicator
from .config import Settings, get_settings
from .domain.entities import (
    AdapterFailure,
    DomainContext,
    ExtractionInput,
    ExtractionOutcome,
    ImageInput,
    InboundEmail,
    InboundMessage,
    Rejected,
    TextInput,
    User,
)
from .domain.errors import AdapterUnavailable, NoMatchingUser, PersistenceError
from .duplicates import DuplicateDetector, DuplicatePending
from .gateway import ExpenseGateway, totals_by_category, totals_by_currency
from .identity import TELEGRAM_CHANNEL, IdentityResolver, bank_alias_address
from .intents import (
    BankSetupInstructions,
    CancelPendingDuplicate,
    CategoryBreakdown,
    ChangeCurrency,
    ConfirmPendingDuplicate,
    DeleteLast,
    ExtractAsExpense,
    LinkAccountRequest,
    MonthlySummary,
    ShowHelp,
    route,
)
from .link_codes import LinkCodeService
from .normalizer import normalize

logger = logging.getLogger(__name__)

COULD_NOT_PROCESS = "I couldn't process that right now. Please try again in a moment."
COULD_NOT_SAVE = "I couldn't save your expense. Please try again."


class ReplySender(Protocol):
    def notify(self, channel_key: str, text: str) -> None:
        """Queue a reply without waiting for delivery; delivery failures are logged by the sender."""


class MediaFetcher(Protocol):
    async def fetch_bytes(self, ref: str) -> tuple[bytes, str]:
        """Download an image or voice note. Raises AdapterUnavailable on failure."""


class Extractor(Protocol):
    def extract(self, source: ExtractionInput, context: DomainContext) -> ExtractionOutcome: ...


class Transcriber(Protocol):
    def transcribe(self, data: bytes, mime_type: str) -> str: ...


@dataclass(frozen=True, slots=True)
class EmailOutcome:
    status: str
    reason: str | None = None
    expense_id: int | None = None


def month_bounds(today: date) -> tuple[date, date]:
    last_day = calendar.monthrange(today.year, today.month)[1]
    return today.replace(day=1), today.replace(day=last_day)


class ExpensePipeline:
    def __init__(
        self,
        *,
        gateway: ExpenseGateway,
        extractor: Extractor,
        identity: IdentityResolver,
        detector: DuplicateDetector,
        dedup: InboundDeduplicator,
        link_codes: LinkCodeService,
        replies: ReplySender,
        media: MediaFetcher | None = None,
        transcriber: Transcriber | None = None,
        settings: Settings | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._gateway = gateway
        self._extractor = extractor
        self._identity = identity
        self._detector = detector
        self._dedup = dedup
        self._link_codes = link_codes
        self._replies = replies
        self._media = media
        self._transcriber = transcriber
        self._settings = settings or get_settings()
        self._today = today

    async def handle(self, message: InboundMessage) -> str | None:
        """Process one chat message and send (and return) the reply."""
        try:
            user = await asyncio.to_thread(
                self._identity.resolve,
                message.channel,
                message.raw_sender_id,
                message.display_name,
                message.handle,
            )
        except PersistenceError:
            return self._reply(message.sender_channel_key, formatter.GENERIC_FAILURE)

        if self._dedup.seen(message.channel, message.message_id):
            return None

        try:
            reply = await self._dispatch(user, message)
        except AdapterUnavailable as exc:
            logger.error("External service failed for %s: %s", user.key, exc)
            reply = formatter.error(COULD_NOT_PROCESS)
        except PersistenceError:
            reply = formatter.error(COULD_NOT_SAVE)
        return self._reply(message.sender_channel_key, reply)

    def _reply(self, channel_key: str, text: str) -> str:
        self._replies.notify(channel_key, text)
        return text

    async def _dispatch(self, user: User, message: InboundMessage) -> str:
        if message.kind == "image" and message.image_ref and self._media:
            data, mime_type = await self._media.fetch_bytes(message.image_ref)
            preferred = await asyncio.to_thread(self._gateway.preferred_currency, user.key)
            outcome = await asyncio.to_thread(
                self._extractor.extract,
                ImageInput(data=data, mime_type=mime_type, currency_hint=preferred),
                DomainContext.RECEIPT_PHOTO,
            )
            return await self._record(user, outcome, preferred, from_image=True)

        if message.kind == "voice" and message.voice_ref and self._media and self._transcriber:
            data, mime_type = await self._media.fetch_bytes(message.voice_ref)
            transcript = await asyncio.to_thread(self._transcriber.transcribe, data, mime_type)
            if not transcript.strip():
                return formatter.VOICE_NOT_UNDERSTOOD
            self._replies.notify(message.sender_channel_key, formatter.voice_heard(transcript))
            return await self._handle_text(user, transcript)

        if message.kind == "text" and message.text and message.text.strip():
            return await self._handle_text(user, message.text)

        return formatter.UNSUPPORTED_MESSAGE

    async def _handle_text(self, user: User, text: str) -> str:
        pending = self._detector.pending_for(user.key)
        intent = route(text, has_pending=pending is not None)

        if isinstance(intent, ConfirmPendingDuplicate):
            expense = await asyncio.to_thread(self._detector.confirm, user.key, pending)
            return formatter.replaced(expense)

        if isinstance(intent, CancelPendingDuplicate):
            self._detector.cancel(user.key)
            return formatter.PENDING_CANCELLED

        if isinstance(intent, ShowHelp):
            return formatter.HELP_MESSAGE

        if isinstance(intent, LinkAccountRequest):
            try:
                code = await asyncio.to_thread(self._link_codes.issue, user.key, user.name, user.handle)
            except PersistenceError:
                return formatter.LINK_FAILED
            return formatter.link_code(
                code, self._settings.dashboard_url, self._settings.link_code_ttl_minutes
            )

        if isinstance(intent, (MonthlySummary, CategoryBreakdown)):
            start, end = month_bounds(self._today())
            expenses = await asyncio.to_thread(self._gateway.find_in_range, user.key, start, end)
            if not expenses:
                return formatter.EMPTY_MONTH
            if isinstance(intent, MonthlySummary):
                return formatter.monthly_summary(expenses, totals_by_currency(expenses))
            return formatter.category_breakdown(totals_by_category(expenses))

        if isinstance(intent, DeleteLast):
            last = await asyncio.to_thread(self._gateway.find_last, user.key)
            if last is None:
                return formatter.NOTHING_TO_DELETE
            await asyncio.to_thread(self._gateway.delete_by_id, last.id, user.key)
            logger.info("Deleted expense %s for %s", last.id, user.key)
            return formatter.deleted(last)

        if isinstance(intent, ChangeCurrency):
            last = await asyncio.to_thread(self._gateway.find_last, user.key)
            if last is None:
                return formatter.NOTHING_TO_MODIFY
            await asyncio.to_thread(self._gateway.update_currency, last.id, user.key, intent.code)
            return formatter.currency_changed(last, intent.code)

        if isinstance(intent, BankSetupInstructions):
            if user.channel != TELEGRAM_CHANNEL:
                return formatter.BANK_SETUP_TELEGRAM_ONLY
            address = bank_alias_address(
                self._settings.email_alias, user.raw_id, self._settings.email_domain
            )
            return formatter.bank_setup(address)

        if isinstance(intent, ExtractAsExpense):
            preferred = await asyncio.to_thread(self._gateway.preferred_currency, user.key)
            outcome = await asyncio.to_thread(
                self._extractor.extract,
                TextInput(text=intent.text, currency_hint=preferred),
                DomainContext.CHAT_FREEFORM,
            )
            return await self._record(user, outcome, preferred)

        return formatter.NOT_UNDERSTOOD

    async def _record(
        self,
        user: User,
        outcome: ExtractionOutcome,
        preferred: str | None,
        from_image: bool = False,
    ) -> str:
        if isinstance(outcome, Rejected):
            logger.info("No transaction for %s: %s", user.key, outcome.reason)
            return formatter.not_a_receipt(outcome.reason) if from_image else formatter.NOT_UNDERSTOOD
        if isinstance(outcome, AdapterFailure):
            return formatter.error(COULD_NOT_PROCESS)

        candidate = normalize(outcome.candidate, preferred, today=self._today())
        result = await asyncio.to_thread(self._detector.submit, user.key, candidate)
        if isinstance(result, DuplicatePending):
            return formatter.duplicate_detected(candidate)
        return formatter.saved(result.expense, candidate.confidence if from_image else None)

    async def handle_bank_email(self, email: InboundEmail) -> EmailOutcome:
        """Record a forwarded bank notification and tell the owner on Telegram."""
        keyword = self._settings.bank_keyword.lower()
        if keyword not in email.sender.lower() and keyword not in email.subject.lower():
            logger.info("Skipping email from %s: not a %s notification", email.sender, keyword)
            return EmailOutcome("skipped", "not_bank")

        if email.message_id and self._dedup.seen("email", email.message_id):
            return EmailOutcome("skipped", "already_processed")

        try:
            user = await asyncio.to_thread(
                self._identity.resolve_bank_email, email.recipient, email.sender
            )
        except NoMatchingUser as exc:
            logger.info("Ignoring bank email: %s", exc)
            return EmailOutcome("skipped", "no_user")
        except PersistenceError:
            return EmailOutcome("error", "persistence")

        outcome = await asyncio.to_thread(
            self._extractor.extract,
            TextInput(text=f"Subject: {email.subject}\n\nBody:\n{email.body}"),
            DomainContext.BANK_EMAIL,
        )
        if isinstance(outcome, Rejected):
            logger.info("Bank email for %s is not a transaction: %s", user.key, outcome.reason)
            return EmailOutcome("skipped", "not_transaction")
        if isinstance(outcome, AdapterFailure):
            self._replies.notify(user.key, formatter.BANK_EMAIL_FAILED)
            return EmailOutcome("error", "adapter_unavailable")

        raw = outcome.candidate
        if not raw.merchant:
            raw = replace(raw, merchant=self._settings.bank_keyword.title())
        candidate = normalize(raw, today=self._today())
        card = f"Card ****{candidate.card_last4}" if candidate.card_last4 else "Bank email"
        candidate = replace(candidate, description=card)

        try:
            result = await asyncio.to_thread(self._detector.submit, user.key, candidate)
        except PersistenceError:
            self._replies.notify(user.key, formatter.BANK_EMAIL_FAILED)
            return EmailOutcome("error", "persistence")

        if isinstance(result, DuplicatePending):
            self._replies.notify(user.key, formatter.duplicate_detected(candidate))
            return EmailOutcome("skipped", "duplicate", expense_id=result.existing.id)

        self._replies.notify(user.key, formatter.bank_email_saved(result.expense))
        return EmailOutcome("ok", expense_id=result.expense.id)
