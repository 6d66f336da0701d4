from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_assistant import models  # noqa: F401
from expense_assistant.cache import InboundDeduplicator, InMemoryTTLCache
from expense_assistant.config import get_settings
from expense_assistant.db import Base
from expense_assistant.domain.entities import (
    ExtractedExpenseCandidate,
    InboundMessage,
    Rejected,
    Success,
)
from expense_assistant.duplicates import DuplicateDetector
from expense_assistant.gateway import ExpenseGateway
from expense_assistant.identity import IdentityResolver
from expense_assistant.link_codes import LinkCodeService
from expense_assistant.pipeline import ExpensePipeline

TODAY = date(2024, 3, 15)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExtractor:
    def __init__(self, outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = []

    def extract(self, source, context):
        self.calls.append((source, context))
        if self.outcomes:
            return self.outcomes.pop(0)
        return Rejected("No monetary amount found.")


class FakeTranscriber:
    def __init__(self, transcript: str) -> None:
        self.transcript = transcript

    def transcribe(self, data: bytes, mime_type: str) -> str:
        return self.transcript


class FakeMedia:
    def __init__(self) -> None:
        self.fetched = []

    async def fetch_bytes(self, ref: str) -> tuple[bytes, str]:
        self.fetched.append(ref)
        return b"\xff\xd8fake", "image/jpeg"


class RecordingReplies:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def notify(self, channel_key: str, text: str) -> None:
        self.sent.append((channel_key, text))


def candidate(amount: str = "50", merchant: str | None = "uber", **fields) -> Success:
    fields.setdefault("category", "transport")
    return Success(ExtractedExpenseCandidate(amount=Decimal(amount), merchant=merchant, **fields))


def text_message(text: str, message_id: str, key: str = "telegram:42") -> InboundMessage:
    return InboundMessage(
        sender_channel_key=key,
        kind="text",
        message_id=message_id,
        text=text,
        display_name="Ana Perez",
        handle="ana",
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def gateway(session_factory) -> ExpenseGateway:
    return ExpenseGateway(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_pipeline(gateway, clock):
    def factory(*outcomes, transcript: str = "", today: date = TODAY):
        extractor = FakeExtractor(outcomes)
        replies = RecordingReplies()
        media = FakeMedia()
        detector = DuplicateDetector(gateway, InMemoryTTLCache(clock), ttl_seconds=300, clock=clock)
        pipeline = ExpensePipeline(
            gateway=gateway,
            extractor=extractor,
            identity=IdentityResolver(gateway, "gastos"),
            detector=detector,
            dedup=InboundDeduplicator(InMemoryTTLCache(clock), ttl=300),
            link_codes=LinkCodeService(gateway, ttl_minutes=10),
            replies=replies,
            media=media,
            transcriber=FakeTranscriber(transcript),
            settings=get_settings(),
            today=lambda: today,
        )
        return SimpleNamespace(
            pipeline=pipeline,
            extractor=extractor,
            replies=replies,
            media=media,
            detector=detector,
            gateway=gateway,
        )

    return factory


def webhook_payload(*messages) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "contacts": [{"wa_id": "51999", "profile": {"name": "Ana"}}],
                            "messages": list(messages),
                        }
                    }
                ]
            }
        ],
    }
