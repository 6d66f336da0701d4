"""Duplicate detection and the pending-replace confirmation flow.

A user is either clean or has exactly one pending duplicate awaiting an
affirmative reply. The match is exact on (user, merchant, amount, date):
near-duplicates with different merchant spelling or a shifted date are not
detected.

The duplicate lookup and the insert are two separate storage calls, so two
identical submissions racing each other can both be inserted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Union

from .cache import Clock, TTLCache
from .domain.entities import Expense, ExtractedExpenseCandidate, PendingDuplicate
from .gateway import ExpenseGateway

logger = logging.getLogger(__name__)

AFFIRMATIVE_TOKENS = frozenset({"si", "sí", "yes", "ok"})
NEGATIVE_TOKENS = frozenset({"no", "cancelar", "cancel"})


def is_affirmative(text: str) -> bool:
    return text.strip().lower() in AFFIRMATIVE_TOKENS


def is_negative(text: str) -> bool:
    return text.strip().lower() in NEGATIVE_TOKENS


@dataclass(frozen=True, slots=True)
class Saved:
    expense: Expense


@dataclass(frozen=True, slots=True)
class DuplicatePending:
    existing: Expense
    pending: PendingDuplicate


SubmitResult = Union[Saved, DuplicatePending]


class DuplicateDetector:
    def __init__(
        self,
        gateway: ExpenseGateway,
        pending: TTLCache[str, PendingDuplicate],
        ttl_seconds: float,
        clock: Clock = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._pending = pending
        self._ttl = ttl_seconds
        self._clock = clock

    def submit(self, user_key: str, candidate: ExtractedExpenseCandidate) -> SubmitResult:
        """Insert the candidate unless an identical expense exists; then stage it instead."""
        existing = self._gateway.find_duplicate(
            user_key, candidate.merchant, candidate.amount, candidate.date
        )
        if existing is None:
            expense = self._gateway.insert(user_key, candidate)
            logger.info("Saved expense %s for %s", expense.id, user_key)
            return Saved(expense)

        pending = PendingDuplicate(
            existing_id=existing.id,
            candidate=candidate,
            expires_at=self._clock() + self._ttl,
        )
        self._pending.set(user_key, pending, self._ttl)
        logger.info("Duplicate of expense %s staged for %s", existing.id, user_key)
        return DuplicatePending(existing=existing, pending=pending)

    def pending_for(self, user_key: str) -> PendingDuplicate | None:
        pending = self._pending.get(user_key)
        if pending is None:
            return None
        if self._clock() >= pending.expires_at:
            self._pending.delete(user_key)
            return None
        return pending

    def confirm(self, user_key: str, pending: PendingDuplicate) -> Expense:
        """Replace the colliding expense with the staged candidate.

        The collision is looked up again, so an original deleted in the meantime
        leaves only the insert. The old row is removed after the new one is stored.
        """
        candidate = pending.candidate
        try:
            existing = self._gateway.find_duplicate(
                user_key, candidate.merchant, candidate.amount, candidate.date
            )
            expense = self._gateway.insert(user_key, candidate)
            if existing is not None:
                self._gateway.delete_by_id(existing.id, user_key)
        finally:
            self._pending.delete(user_key)
        if existing is None:
            logger.info("Original of pending duplicate is gone; saved %s for %s", expense.id, user_key)
        else:
            logger.info("Replaced expense %s with %s for %s", existing.id, expense.id, user_key)
        return expense

    def cancel(self, user_key: str) -> None:
        self._pending.delete(user_key)
        logger.info("Pending duplicate cancelled for %s", user_key)
