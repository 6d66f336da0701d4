from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from .domain.entities import LinkCode
from .domain.errors import LinkCodeError
from .gateway import ExpenseGateway

logger = logging.getLogger(__name__)

# No 0/O or 1/I.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class LinkCodeService:
    """Single-use codes pairing a chat identity with a dashboard session."""

    def __init__(
        self,
        gateway: ExpenseGateway,
        ttl_minutes: int,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._gateway = gateway
        self._ttl = timedelta(minutes=ttl_minutes)
        self._now = now

    def issue(self, user_key: str, display_name: str | None = None, handle: str | None = None) -> str:
        code = generate_code()
        self._gateway.replace_link_code(
            user_key,
            code,
            display_name=display_name,
            handle=handle,
            expires_at=self._now() + self._ttl,
        )
        logger.info("Issued link code for %s", user_key)
        return code

    def redeem(self, code: str) -> LinkCode:
        link = self._gateway.get_link_code(code.strip().upper())
        if link is None:
            raise LinkCodeError("Unknown link code.")
        if link.used:
            raise LinkCodeError("Link code already used.")
        if self._now() >= _as_utc(link.expires_at):
            raise LinkCodeError("Link code expired.")
        if not self._gateway.mark_link_code_used(link.id):
            raise LinkCodeError("Link code already used.")
        logger.info("Link code redeemed for %s", link.user_key)
        return link
