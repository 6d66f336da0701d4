"""Process-wide wiring of the pipeline collaborators.

The pending-duplicate store and the inbound dedup store are shared by every
pipeline built in this process, so a duplicate staged from a bank email can
be confirmed from the Telegram chat.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from .cache import InboundDeduplicator, InMemoryTTLCache
from .config import get_settings
from .db import SessionLocal
from .duplicates import DuplicateDetector
from .extraction import OpenAIExtractor, OpenAITranscriber
from .gateway import ExpenseGateway
from .identity import IdentityResolver
from .link_codes import LinkCodeService
from .pipeline import ExpensePipeline, MediaFetcher, ReplySender

logger = logging.getLogger(__name__)

settings = get_settings()


class LoggingReplySender:
    """Used when no messaging transport is configured for outbound replies."""

    def notify(self, channel_key: str, text: str) -> None:
        logger.warning("No transport configured to notify %s: %s", channel_key, text)


@lru_cache
def get_gateway() -> ExpenseGateway:
    return ExpenseGateway(SessionLocal)


@lru_cache
def get_extractor() -> OpenAIExtractor:
    return OpenAIExtractor.from_settings(settings)


@lru_cache
def get_transcriber() -> OpenAITranscriber:
    return OpenAITranscriber.from_settings(settings)


@lru_cache
def get_detector() -> DuplicateDetector:
    return DuplicateDetector(
        get_gateway(),
        InMemoryTTLCache(),
        ttl_seconds=settings.pending_duplicate_ttl_seconds,
    )


@lru_cache
def get_deduplicator() -> InboundDeduplicator:
    return InboundDeduplicator(InMemoryTTLCache(), ttl=settings.inbound_dedup_ttl_seconds)


@lru_cache
def get_link_codes() -> LinkCodeService:
    return LinkCodeService(get_gateway(), ttl_minutes=settings.link_code_ttl_minutes)


def build_pipeline(replies: ReplySender, media: MediaFetcher | None = None) -> ExpensePipeline:
    gateway = get_gateway()
    return ExpensePipeline(
        gateway=gateway,
        extractor=get_extractor(),
        identity=IdentityResolver(gateway, settings.email_alias),
        detector=get_detector(),
        dedup=get_deduplicator(),
        link_codes=get_link_codes(),
        replies=replies,
        media=media,
        transcriber=get_transcriber(),
        settings=settings,
    )
