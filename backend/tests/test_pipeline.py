import asyncio
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_assistant import formatter
from expense_assistant.cache import InboundDeduplicator, InMemoryTTLCache
from expense_assistant.config import get_settings
from expense_assistant.domain.entities import (
    AdapterFailure,
    DomainContext,
    ImageInput,
    InboundEmail,
    InboundMessage,
    Rejected,
    TextInput,
)
from expense_assistant.duplicates import DuplicateDetector
from expense_assistant.extraction import parse_completion
from expense_assistant.gateway import ExpenseGateway
from expense_assistant.identity import IdentityResolver
from expense_assistant.link_codes import LinkCodeService
from expense_assistant.pipeline import ExpensePipeline, month_bounds

from conftest import TODAY, FakeExtractor, RecordingReplies, candidate, text_message

MARCH = (date(2024, 3, 1), date(2024, 3, 31))


def _send(env, text, message_id, key="telegram:42"):
    return asyncio.run(env.pipeline.handle(text_message(text, message_id, key)))


def _email(**overrides):
    fields = {
        "sender": "Interbank <servicioalcliente@netinterbank.com.pe>",
        "recipient": "gastos+42@example.com",
        "subject": "Consumo con tu Tarjeta de Débito Interbank",
        "body": "Consumo aprobado por S/ 45.90 en WONG con tu tarjeta ****1234",
        "message_id": "<abc@mail>",
    }
    fields.update(overrides)
    return InboundEmail(**fields)


def test_month_bounds():
    assert month_bounds(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))
    assert month_bounds(date(2023, 12, 31)) == (date(2023, 12, 1), date(2023, 12, 31))


def test_quick_text_entry_is_saved(make_pipeline):
    env = make_pipeline(parse_completion('{"amount": 50, "merchant": "uber", "category": "transporte"}'))

    reply = _send(env, "50 uber", "1")

    assert "Expense saved" in reply
    assert "50" in reply
    assert "Uber" in reply
    assert env.replies.sent == [("telegram:42", reply)]
    source, context = env.extractor.calls[0]
    assert source == TextInput("50 uber", currency_hint=None)
    assert context is DomainContext.CHAT_FREEFORM

    [expense] = env.gateway.find_in_range("telegram:42", *MARCH)
    assert expense.amount == Decimal("50.00")
    assert expense.merchant == "Uber"
    assert expense.category == "transport"
    assert expense.currency == get_settings().default_currency
    assert expense.date == TODAY


def test_duplicate_then_affirmative_replaces(make_pipeline):
    env = make_pipeline(candidate("50", "uber"), candidate("50", "uber"))

    _send(env, "50 uber", "1")
    [original] = env.gateway.find_in_range("telegram:42", *MARCH)

    warning = _send(env, "50 uber", "2")
    assert "Duplicate expense detected" in warning
    assert len(env.gateway.find_in_range("telegram:42", *MARCH)) == 1

    confirmation = _send(env, "si", "3")
    assert "Expense updated" in confirmation
    [current] = env.gateway.find_in_range("telegram:42", *MARCH)
    assert current.id != original.id
    assert len(env.extractor.calls) == 2
    assert env.detector.pending_for("telegram:42") is None


def test_stale_confirmation_after_delete_keeps_newer_expense(make_pipeline):
    env = make_pipeline(candidate("50", "uber"), candidate("50", "uber"), candidate("20", "wong"))

    _send(env, "50 uber", "1")
    assert "Duplicate expense detected" in _send(env, "50 uber", "2")
    assert "Uber" in _send(env, "borrar", "3")
    _send(env, "20 wong", "4")

    assert "Expense updated" in _send(env, "si", "5")

    remaining = env.gateway.find_in_range("telegram:42", *MARCH)
    assert sorted((expense.merchant, expense.amount) for expense in remaining) == [
        ("Uber", Decimal("50.00")),
        ("Wong", Decimal("20.00")),
    ]


def test_duplicate_receipt_photos_keep_second_extraction(make_pipeline):
    receipt = {"category": "food", "date": date(2024, 3, 1), "confidence": 0.95}
    env = make_pipeline(
        candidate("45.90", "Wong", description="first scan", **receipt),
        candidate("45.90", "Wong", description="second scan", **receipt),
    )

    def photo(message_id):
        message = InboundMessage(
            sender_channel_key="telegram:42", kind="image", message_id=message_id, image_ref=message_id
        )
        return asyncio.run(env.pipeline.handle(message))

    assert "Expense saved" in photo("p1")
    assert "Duplicate expense detected" in photo("p2")
    assert len(env.gateway.find_in_range("telegram:42", *MARCH)) == 1

    _send(env, "SI", "3")

    [expense] = env.gateway.find_in_range("telegram:42", *MARCH)
    assert expense.description == "second scan"
    assert expense.date == date(2024, 3, 1)


def test_affirmative_after_expiry_goes_to_extraction(make_pipeline, clock):
    env = make_pipeline(candidate("50", "uber"), candidate("50", "uber"), Rejected("No monetary amount found."))
    _send(env, "50 uber", "1")
    _send(env, "50 uber", "2")

    clock.advance(300)
    reply = _send(env, "si", "3")

    assert reply == formatter.NOT_UNDERSTOOD
    assert env.extractor.calls[-1][0].text == "si"
    assert len(env.gateway.find_in_range("telegram:42", *MARCH)) == 1


def test_negative_reply_keeps_original(make_pipeline):
    env = make_pipeline(candidate("50", "uber"), candidate("50", "uber"))
    _send(env, "50 uber", "1")
    _send(env, "50 uber", "2")

    assert _send(env, "no", "3") == formatter.PENDING_CANCELLED
    assert env.detector.pending_for("telegram:42") is None
    assert len(env.gateway.find_in_range("telegram:42", *MARCH)) == 1


def test_redelivered_message_is_processed_once(make_pipeline):
    env = make_pipeline(candidate("50", "uber"), candidate("50", "uber"))

    assert _send(env, "50 uber", "7") is not None
    assert _send(env, "50 uber", "7") is None

    assert len(env.extractor.calls) == 1
    assert len(env.replies.sent) == 1


def test_non_transaction_text_gets_neutral_reply(make_pipeline):
    env = make_pipeline(Rejected("No monetary amount found."))

    assert _send(env, "hola que tal", "1") == formatter.NOT_UNDERSTOOD
    assert env.gateway.find_last("telegram:42") is None


def test_extraction_outage_is_reported_once(make_pipeline):
    env = make_pipeline(AdapterFailure("timeout"))

    reply = _send(env, "50 uber", "1")

    assert reply.startswith("❌ Error:")
    assert env.replies.sent == [("telegram:42", reply)]
    assert env.gateway.find_last("telegram:42") is None


def test_receipt_photo_uses_preferred_currency_hint(make_pipeline):
    env = make_pipeline(*[candidate(str(10 + i), f"shop {i}", currency="COP") for i in range(3)],
                        candidate("45.90", "wong", category="food", confidence=0.9))
    for i in range(3):
        _send(env, f"{10 + i} shop {i}", f"t{i}")

    photo = InboundMessage(sender_channel_key="telegram:42", kind="image", message_id="p1", image_ref="file-1")
    reply = asyncio.run(env.pipeline.handle(photo))

    source, context = env.extractor.calls[-1]
    assert isinstance(source, ImageInput)
    assert source.currency_hint == "COP"
    assert context is DomainContext.RECEIPT_PHOTO
    assert env.media.fetched == ["file-1"]
    assert "Confidence: 90%" in reply


def test_rejected_photo_explains_reason(make_pipeline):
    env = make_pipeline(Rejected("it is a selfie"))
    photo = InboundMessage(sender_channel_key="telegram:42", kind="image", message_id="p1", image_ref="file-1")

    reply = asyncio.run(env.pipeline.handle(photo))

    assert reply == formatter.not_a_receipt("it is a selfie")


def test_voice_note_is_echoed_then_processed(make_pipeline):
    env = make_pipeline(candidate("50", "uber"), transcript="cincuenta soles en uber")
    voice = InboundMessage(sender_channel_key="telegram:42", kind="voice", message_id="v1", voice_ref="voice-1")

    reply = asyncio.run(env.pipeline.handle(voice))

    assert env.replies.sent[0] == ("telegram:42", formatter.voice_heard("cincuenta soles en uber"))
    assert env.replies.sent[1] == ("telegram:42", reply)
    assert "Expense saved" in reply
    assert env.extractor.calls[0][0].text == "cincuenta soles en uber"


def test_silent_voice_note(make_pipeline):
    env = make_pipeline(transcript="  ")
    voice = InboundMessage(sender_channel_key="telegram:42", kind="voice", message_id="v1", voice_ref="voice-1")

    assert asyncio.run(env.pipeline.handle(voice)) == formatter.VOICE_NOT_UNDERSTOOD
    assert env.extractor.calls == []


def test_delete_last_and_change_currency(make_pipeline):
    env = make_pipeline(candidate("20", "taxi"), candidate("35", "rappi", category="food"))

    assert _send(env, "/borrar", "1") == formatter.NOTHING_TO_DELETE
    assert _send(env, "/moneda usd", "2") == formatter.NOTHING_TO_MODIFY

    _send(env, "20 taxi", "3")
    _send(env, "35 rappi", "4")

    assert "Currency updated" in _send(env, "/moneda usd", "5")
    assert env.gateway.find_last("telegram:42").currency == "USD"

    assert "Rappi" in _send(env, "/borrar", "6")
    [remaining] = env.gateway.find_in_range("telegram:42", *MARCH)
    assert remaining.merchant == "Taxi"


def test_summaries(make_pipeline):
    env = make_pipeline(candidate("20", "taxi"), candidate("35", "rappi", category="food"))

    assert _send(env, "/resumen", "1") == formatter.EMPTY_MONTH

    _send(env, "20 taxi", "2")
    _send(env, "35 rappi", "3")

    summary = _send(env, "/resumen", "4")
    total = formatter.format_amount(Decimal("55"), get_settings().default_currency)
    assert f"Total: {total}" in summary
    breakdown = _send(env, "/categorias", "5")
    assert breakdown.splitlines()[2].startswith("🍔 Food")


def test_help_link_and_bank_commands(make_pipeline):
    env = make_pipeline()
    settings = get_settings()

    assert _send(env, "/help", "1") == formatter.HELP_MESSAGE

    link_reply = _send(env, "/vincular", "2")
    assert "Link code" in link_reply

    bank_reply = _send(env, "/banco", "3")
    assert f"{settings.email_alias}+42@{settings.email_domain}" in bank_reply

    assert _send(env, "/banco", "4", key="whatsapp:5199") == formatter.BANK_SETUP_TELEGRAM_ONLY


def test_storage_outage_yields_single_generic_reply():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    gateway = ExpenseGateway(sessionmaker(bind=engine))
    replies = RecordingReplies()
    pipeline = ExpensePipeline(
        gateway=gateway,
        extractor=FakeExtractor([]),
        identity=IdentityResolver(gateway, "gastos"),
        detector=DuplicateDetector(gateway, InMemoryTTLCache(), ttl_seconds=300),
        dedup=InboundDeduplicator(InMemoryTTLCache(), ttl=300),
        link_codes=LinkCodeService(gateway, ttl_minutes=10),
        replies=replies,
    )

    reply = asyncio.run(pipeline.handle(text_message("50 uber", "1")))

    assert reply == formatter.GENERIC_FAILURE
    assert replies.sent == [("telegram:42", formatter.GENERIC_FAILURE)]


def test_bank_email_is_recorded_and_notified(make_pipeline):
    env = make_pipeline(candidate("45.90", "WONG", category="food", card_last4="1234"))
    _send(env, "/help", "1")

    outcome = asyncio.run(env.pipeline.handle_bank_email(_email()))

    assert outcome.status == "ok"
    expense = env.gateway.find_last("telegram:42")
    assert outcome.expense_id == expense.id
    assert expense.description == "Card ****1234"
    assert expense.merchant == "Wong"
    assert env.extractor.calls[0][1] is DomainContext.BANK_EMAIL
    key, text = env.replies.sent[-1]
    assert key == "telegram:42"
    assert "Automatic expense recorded" in text


def test_bank_email_without_card_and_merchant(make_pipeline):
    env = make_pipeline(candidate("12", None))
    _send(env, "/help", "1")

    asyncio.run(env.pipeline.handle_bank_email(_email()))

    expense = env.gateway.find_last("telegram:42")
    assert expense.description == "Bank email"
    assert expense.merchant == get_settings().bank_keyword.title()


def test_non_bank_email_is_skipped_without_lookup(make_pipeline):
    env = make_pipeline(candidate("10", "x"))

    outcome = asyncio.run(
        env.pipeline.handle_bank_email(_email(sender="news@shop.com", subject="Big sale"))
    )

    assert (outcome.status, outcome.reason) == ("skipped", "not_bank")
    assert env.extractor.calls == []
    assert env.replies.sent == []
    assert env.gateway.get_user("telegram:42") is None


def test_bank_email_for_unknown_recipient_is_silent(make_pipeline):
    env = make_pipeline(candidate("10", "x"))

    outcome = asyncio.run(env.pipeline.handle_bank_email(_email(recipient="gastos+999@example.com")))

    assert (outcome.status, outcome.reason) == ("skipped", "no_user")
    assert env.extractor.calls == []
    assert env.replies.sent == []


def test_bank_email_not_a_transaction(make_pipeline):
    env = make_pipeline(Rejected("No monetary amount found."))
    _send(env, "/help", "1")
    sent_before = len(env.replies.sent)

    outcome = asyncio.run(env.pipeline.handle_bank_email(_email()))

    assert (outcome.status, outcome.reason) == ("skipped", "not_transaction")
    assert len(env.replies.sent) == sent_before


def test_bank_email_redelivery_is_ignored(make_pipeline):
    env = make_pipeline(candidate("45.90", "wong"), candidate("45.90", "wong"))
    _send(env, "/help", "1")

    asyncio.run(env.pipeline.handle_bank_email(_email()))
    again = asyncio.run(env.pipeline.handle_bank_email(_email()))

    assert (again.status, again.reason) == ("skipped", "already_processed")
    assert len(env.extractor.calls) == 1


def test_bank_email_duplicate_can_be_confirmed_in_chat(make_pipeline):
    env = make_pipeline(candidate("45.90", "wong"), candidate("45.90", "wong", card_last4="1234"))
    _send(env, "45.90 wong", "1")

    outcome = asyncio.run(env.pipeline.handle_bank_email(_email()))
    assert (outcome.status, outcome.reason) == ("skipped", "duplicate")
    assert "Duplicate expense detected" in env.replies.sent[-1][1]

    _send(env, "si", "2")
    [expense] = env.gateway.find_in_range("telegram:42", *MARCH)
    assert expense.description == "Card ****1234"
