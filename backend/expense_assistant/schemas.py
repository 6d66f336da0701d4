from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class LinkRequest(BaseModel):
    code: str = Field(min_length=4, max_length=12)


class UserOut(BaseModel):
    key: str
    name: str
    handle: Optional[str] = None
    notification_email: Optional[EmailStr] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AuthResponse(Token):
    user: UserOut


class ExpenseOut(BaseModel):
    id: int
    amount: Decimal
    currency: str
    category: str
    merchant: str
    description: Optional[str] = None
    date: date

    class Config:
        from_attributes = True


class MonthlySummary(BaseModel):
    month: int
    year: int
    count: int
    totals_by_currency: dict[str, Decimal]
    totals_by_category: dict[str, dict[str, Decimal]]
    top_category: Optional[str]


class NotificationEmailIn(BaseModel):
    email: Optional[EmailStr] = None


class EmailWebhookResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    expense_id: Optional[int] = None
