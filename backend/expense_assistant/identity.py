from __future__ import annotations

import logging
import re

from .domain.entities import User
from .domain.errors import NoMatchingUser
from .gateway import ExpenseGateway

logger = logging.getLogger(__name__)

TELEGRAM_CHANNEL = "telegram"


def canonical_key(channel_kind: str, raw_id: str) -> str:
    return f"{channel_kind}:{raw_id}"


def parse_recipient_alias(recipient: str, alias: str) -> str | None:
    """Return the chat id encoded in ``alias+<digits>@domain``, or None."""
    match = re.search(rf"(?:^|[\s<,]){re.escape(alias)}\+(\d+)@", recipient or "", re.IGNORECASE)
    return match.group(1) if match else None


def bank_alias_address(alias: str, chat_id: str, domain: str) -> str:
    return f"{alias}+{chat_id}@{domain}"


def _extract_address(raw: str) -> str:
    match = re.search(r"<([^>]+)>", raw or "")
    return (match.group(1) if match else raw or "").strip().lower()


class IdentityResolver:
    def __init__(self, gateway: ExpenseGateway, email_alias: str) -> None:
        self._gateway = gateway
        self._email_alias = email_alias

    def resolve(
        self,
        channel_kind: str,
        raw_id: str,
        display_name: str | None = None,
        handle: str | None = None,
    ) -> User:
        key = canonical_key(channel_kind, raw_id)
        user, created = self._gateway.get_or_create_user(
            key, name=display_name or handle or raw_id, handle=handle
        )
        if created:
            logger.info("Created new user %s (%s)", key, user.name)
        return user

    def resolve_bank_email(self, recipient: str, sender: str) -> User:
        chat_id = parse_recipient_alias(recipient, self._email_alias)
        if chat_id:
            user = self._gateway.get_user(canonical_key(TELEGRAM_CHANNEL, chat_id))
            if user:
                return user
            logger.info("No user registered for chat id %s from recipient %s", chat_id, recipient)
        else:
            logger.info("No chat id found in recipient %s", recipient)

        address = _extract_address(sender)
        if address:
            user = self._gateway.find_user_by_notification_email(address)
            if user:
                return user
        raise NoMatchingUser(f"No user for recipient={recipient!r} sender={sender!r}")
