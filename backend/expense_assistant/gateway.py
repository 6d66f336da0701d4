"""Persistence gateway: the narrow set of queries the pipeline issues.

Storage failures surface as ``PersistenceError``; callers never see SQLAlchemy
exceptions or ORM objects.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .domain.entities import Expense, ExtractedExpenseCandidate, LinkCode, User
from .domain.errors import PersistenceError
from .models import ExpenseModel, LinkCodeModel, UserModel

logger = logging.getLogger(__name__)

PREFERRED_CURRENCY_WINDOW = 10
PREFERRED_CURRENCY_THRESHOLD = 0.6


def plurality_currency(
    currencies: Sequence[str], threshold: float = PREFERRED_CURRENCY_THRESHOLD
) -> str | None:
    """Most frequent currency when it reaches ``threshold`` of the sample, otherwise None."""
    if not currencies:
        return None
    top, count = Counter(currencies).most_common(1)[0]
    return top if count / len(currencies) >= threshold else None


def totals_by_currency(expenses: Iterable[Expense]) -> dict[str, Decimal]:
    totals: defaultdict[str, Decimal] = defaultdict(Decimal)
    for expense in expenses:
        totals[expense.currency] += expense.amount
    return dict(totals)


def totals_by_category(expenses: Iterable[Expense]) -> dict[str, dict[str, Decimal]]:
    """Category -> currency -> total. Amounts are never converted between currencies."""
    totals: defaultdict[str, defaultdict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))
    for expense in expenses:
        totals[expense.category][expense.currency] += expense.amount
    return {category: dict(per_currency) for category, per_currency in totals.items()}


def _to_user(model: UserModel) -> User:
    return User(
        key=model.key,
        name=model.name,
        handle=model.handle,
        notification_email=model.notification_email,
        created_at=model.created_at,
    )


def _to_expense(model: ExpenseModel) -> Expense:
    return Expense(
        id=model.id,
        user_key=model.user_key,
        amount=Decimal(model.amount).quantize(Decimal("0.01")),
        currency=model.currency,
        category=model.category,
        merchant=model.merchant,
        description=model.description,
        date=model.date,
        created_at=model.created_at,
    )


def _to_link_code(model: LinkCodeModel) -> LinkCode:
    return LinkCode(
        id=model.id,
        code=model.code,
        user_key=model.user_key,
        display_name=model.display_name,
        handle=model.handle,
        used=model.used,
        expires_at=model.expires_at,
    )


class ExpenseGateway:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Storage call %s failed: %s", operation, exc)
            raise PersistenceError(f"{operation} failed") from exc
        finally:
            db.close()

    # Users

    def get_user(self, key: str) -> User | None:
        with self._session("get_user") as db:
            model = crud.get_user_by_key(db, key)
            return _to_user(model) if model else None

    def get_or_create_user(self, key: str, name: str, handle: str | None = None) -> tuple[User, bool]:
        with self._session("get_or_create_user") as db:
            existing = crud.get_user_by_key(db, key)
            if existing:
                return _to_user(existing), False
            try:
                created = crud.create_user(db, key=key, name=name, handle=handle)
            except IntegrityError:
                # Another request created the same user first.
                db.rollback()
                winner = crud.get_user_by_key(db, key)
                if winner is None:
                    raise
                return _to_user(winner), False
            return _to_user(created), True

    def find_user_by_notification_email(self, email: str) -> User | None:
        with self._session("find_user_by_notification_email") as db:
            model = crud.get_user_by_notification_email(db, email)
            return _to_user(model) if model else None

    def set_notification_email(self, key: str, email: str | None) -> User | None:
        with self._session("set_notification_email") as db:
            model = crud.get_user_by_key(db, key)
            if model is None:
                return None
            return _to_user(crud.set_notification_email(db, model, email))

    # Expenses

    def insert(self, user_key: str, candidate: ExtractedExpenseCandidate) -> Expense:
        with self._session("insert") as db:
            return _to_expense(crud.create_expense(db, user_key, candidate))

    def find_duplicate(self, user_key: str, merchant: str, amount: Decimal, on: date) -> Expense | None:
        with self._session("find_duplicate") as db:
            model = crud.find_duplicate(db, user_key, merchant, amount, on)
            return _to_expense(model) if model else None

    def delete_by_id(self, expense_id: int, user_key: str) -> bool:
        with self._session("delete_by_id") as db:
            return crud.delete_expense_by_id(db, expense_id, user_key)

    def find_last(self, user_key: str) -> Expense | None:
        with self._session("find_last") as db:
            model = crud.get_last_expense(db, user_key)
            return _to_expense(model) if model else None

    def find_in_range(self, user_key: str, start_date: date, end_date: date) -> list[Expense]:
        with self._session("find_in_range") as db:
            return [_to_expense(model) for model in crud.list_expenses(db, user_key, start_date, end_date)]

    def preferred_currency(self, user_key: str) -> str | None:
        with self._session("preferred_currency") as db:
            currencies = crud.recent_currencies(db, user_key, PREFERRED_CURRENCY_WINDOW)
        return plurality_currency(currencies)

    def update_currency(self, expense_id: int, user_key: str, currency: str) -> bool:
        with self._session("update_currency") as db:
            return crud.update_expense_currency(db, expense_id, user_key, currency)

    # Link codes

    def replace_link_code(
        self,
        user_key: str,
        code: str,
        display_name: str | None,
        handle: str | None,
        expires_at: datetime,
    ) -> None:
        with self._session("replace_link_code") as db:
            crud.delete_unused_link_codes(db, user_key)
            crud.create_link_code(db, code, user_key, display_name, handle, expires_at)

    def get_link_code(self, code: str) -> LinkCode | None:
        with self._session("get_link_code") as db:
            model = crud.get_link_code(db, code)
            return _to_link_code(model) if model else None

    def mark_link_code_used(self, link_id: int) -> bool:
        with self._session("mark_link_code_used") as db:
            return crud.mark_link_code_used(db, link_id)
