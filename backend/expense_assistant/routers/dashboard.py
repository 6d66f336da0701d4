from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..domain.entities import User
from ..domain.errors import LinkCodeError
from ..gateway import ExpenseGateway, totals_by_category, totals_by_currency
from ..link_codes import LinkCodeService
from ..pipeline import month_bounds
from ..schemas import AuthResponse, ExpenseOut, LinkRequest, MonthlySummary, NotificationEmailIn, UserOut
from ..security import create_access_token, get_current_user
from ..services import get_gateway, get_link_codes

router = APIRouter(tags=["dashboard"])


@router.post("/link", response_model=AuthResponse)
def redeem_link_code(
    data: LinkRequest,
    link_codes: LinkCodeService = Depends(get_link_codes),
    gateway: ExpenseGateway = Depends(get_gateway),
) -> AuthResponse:
    """Exchange a code issued by the bot for a dashboard session."""
    try:
        link = link_codes.redeem(data.code)
    except LinkCodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    user = gateway.get_user(link.user_key)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")

    token = create_access_token({"sub": user.key})
    return AuthResponse(access_token=token, user=UserOut.model_validate(user))


@router.get("/me", response_model=UserOut)
def read_profile(current_user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.model_validate(current_user)


@router.get("/me/expenses", response_model=list[ExpenseOut])
def list_my_expenses(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    gateway: ExpenseGateway = Depends(get_gateway),
) -> list[ExpenseOut]:
    default_start, default_end = month_bounds(date.today())
    start = start_date or default_start
    end = end_date or default_end
    if start > end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date is after end_date.")
    expenses = gateway.find_in_range(current_user.key, start, end)
    return [ExpenseOut.model_validate(expense) for expense in expenses]


@router.get("/me/summary", response_model=MonthlySummary)
def get_monthly_summary(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000),
    current_user: User = Depends(get_current_user),
    gateway: ExpenseGateway = Depends(get_gateway),
) -> MonthlySummary:
    start, end = month_bounds(date(year, month, 1))
    expenses = gateway.find_in_range(current_user.key, start, end)
    by_category = totals_by_category(expenses)
    top_category = None
    if by_category:
        top_category = max(by_category.items(), key=lambda item: sum(item[1].values()))[0]
    return MonthlySummary(
        month=month,
        year=year,
        count=len(expenses),
        totals_by_currency=totals_by_currency(expenses),
        totals_by_category=by_category,
        top_category=top_category,
    )


@router.put("/me/notification-email", response_model=UserOut)
def update_notification_email(
    data: NotificationEmailIn,
    current_user: User = Depends(get_current_user),
    gateway: ExpenseGateway = Depends(get_gateway),
) -> UserOut:
    """Register the address bank notifications are sent from."""
    email = data.email.lower() if data.email else None
    user = gateway.set_notification_email(current_user.key, email)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return UserOut.model_validate(user)
