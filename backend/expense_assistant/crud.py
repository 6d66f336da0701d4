from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from .domain.entities import ExtractedExpenseCandidate
from .models import ExpenseModel, LinkCodeModel, UserModel


def get_user_by_key(db: Session, key: str) -> UserModel | None:
    return db.scalar(select(UserModel).where(UserModel.key == key))


def get_user_by_notification_email(db: Session, email: str) -> UserModel | None:
    stmt = select(UserModel).where(
        func.lower(UserModel.notification_email) == email.strip().lower()
    )
    return db.scalar(stmt)


def create_user(db: Session, key: str, name: str, handle: str | None) -> UserModel:
    user = UserModel(key=key, name=name, handle=handle)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def set_notification_email(db: Session, user: UserModel, email: str | None) -> UserModel:
    user.notification_email = email.strip().lower() if email else None
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_expense(db: Session, user_key: str, data: ExtractedExpenseCandidate) -> ExpenseModel:
    expense = ExpenseModel(
        user_key=user_key,
        amount=data.amount,
        currency=data.currency,
        category=data.category,
        merchant=data.merchant,
        description=data.description,
        date=data.date,
    )
    db.add(expense)
    db.commit()
    db.refresh(expense)
    return expense


def find_duplicate(
    db: Session, user_key: str, merchant: str, amount: Decimal, on: date
) -> ExpenseModel | None:
    stmt = (
        select(ExpenseModel)
        .where(
            ExpenseModel.user_key == user_key,
            ExpenseModel.merchant == merchant,
            ExpenseModel.amount == amount,
            ExpenseModel.date == on,
        )
        .order_by(ExpenseModel.id.desc())
        .limit(1)
    )
    return db.scalar(stmt)


def delete_expense_by_id(db: Session, expense_id: int, user_key: str) -> bool:
    result = db.execute(
        delete(ExpenseModel).where(ExpenseModel.id == expense_id, ExpenseModel.user_key == user_key)
    )
    db.commit()
    return bool(result.rowcount)


def get_last_expense(db: Session, user_key: str) -> ExpenseModel | None:
    stmt = (
        select(ExpenseModel)
        .where(ExpenseModel.user_key == user_key)
        .order_by(ExpenseModel.created_at.desc(), ExpenseModel.id.desc())
        .limit(1)
    )
    return db.scalar(stmt)


def list_expenses(
    db: Session,
    user_key: str,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[ExpenseModel]:
    stmt = select(ExpenseModel).where(ExpenseModel.user_key == user_key)

    if start_date:
        stmt = stmt.where(ExpenseModel.date >= start_date)
    if end_date:
        stmt = stmt.where(ExpenseModel.date <= end_date)

    stmt = stmt.order_by(ExpenseModel.date.desc(), ExpenseModel.id.desc())
    return list(db.scalars(stmt))


def recent_currencies(db: Session, user_key: str, limit: int) -> list[str]:
    stmt = (
        select(ExpenseModel.currency)
        .where(ExpenseModel.user_key == user_key)
        .order_by(ExpenseModel.created_at.desc(), ExpenseModel.id.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt))


def update_expense_currency(db: Session, expense_id: int, user_key: str, currency: str) -> bool:
    result = db.execute(
        update(ExpenseModel)
        .where(ExpenseModel.id == expense_id, ExpenseModel.user_key == user_key)
        .values(currency=currency)
    )
    db.commit()
    return bool(result.rowcount)


def delete_unused_link_codes(db: Session, user_key: str) -> int:
    result = db.execute(
        delete(LinkCodeModel).where(LinkCodeModel.user_key == user_key, LinkCodeModel.used.is_(False))
    )
    db.commit()
    return result.rowcount or 0


def create_link_code(
    db: Session,
    code: str,
    user_key: str,
    display_name: str | None,
    handle: str | None,
    expires_at: datetime,
) -> LinkCodeModel:
    link = LinkCodeModel(
        code=code,
        user_key=user_key,
        display_name=display_name,
        handle=handle,
        used=False,
        expires_at=expires_at,
    )
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


def get_link_code(db: Session, code: str) -> LinkCodeModel | None:
    return db.scalar(select(LinkCodeModel).where(LinkCodeModel.code == code))


def mark_link_code_used(db: Session, link_id: int) -> bool:
    result = db.execute(
        update(LinkCodeModel)
        .where(LinkCodeModel.id == link_id, LinkCodeModel.used.is_(False))
        .values(used=True)
    )
    db.commit()
    return bool(result.rowcount)
