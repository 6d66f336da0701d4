"""Plain-text reply templates. No business logic lives here."""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from .domain.categories import CURRENCY_SYMBOLS, category_info
from .domain.entities import Expense, ExtractedExpenseCandidate

MONTHLY_PREVIEW_LIMIT = 8

GENERIC_FAILURE = "❌ Something went wrong while processing your message. Please try again."
NOT_UNDERSTOOD = (
    "🤔 I didn't understand. Type /help or send a photo of your receipt.\n\n"
    '💡 Tip: you can write "mercado wong 97 soles" or "50 uber".'
)
VOICE_NOT_UNDERSTOOD = "❌ I couldn't understand the audio. Please try again speaking more clearly."
EMPTY_MONTH = "📭 You have no expenses this month."
NOTHING_TO_DELETE = "📭 You have no expenses to delete."
NOTHING_TO_MODIFY = "📭 You have no expenses to modify."
PENDING_CANCELLED = "👍 Kept your previous expense. The new one was discarded."
UNSUPPORTED_MESSAGE = "❓ Send a photo of your receipt, a voice note, or type /help."
LINK_FAILED = "❌ Could not generate a link code. Please try again."
BANK_SETUP_TELEGRAM_ONLY = "🏦 Bank notifications can be connected from the Telegram bot with /banco."
BANK_EMAIL_FAILED = "❌ I received a bank notification email but couldn't record it. Please add it manually."

HELP_MESSAGE = (
    "🤖 Your expense assistant\n\n"
    "📸 Send a photo of your receipt or invoice and I'll record it.\n\n"
    '🎤 Send a voice note describing the expense (e.g. "50 soles en uber").\n\n'
    "⚡ Quick entry:\n"
    '• "50 uber" - records 50 at Uber\n'
    '• "120 wong" - records 120 at Wong\n'
    '• "100 cop rappi" - records 100 COP\n\n'
    "📝 Commands:\n"
    "• /resumen - this month's expenses\n"
    "• /categorias - totals by category\n"
    "• /borrar - delete the last expense\n"
    "• /moneda COP - change the currency of the last expense\n"
    "• /vincular - connect the dashboard\n"
    "• /banco - connect bank notifications\n"
    "• /ayuda - this message"
)


def format_amount(amount: Decimal, currency: str) -> str:
    """``S/ 1,234.50 PEN``; whole amounts drop the cents."""
    if amount == amount.to_integral_value():
        number = f"{amount:,.0f}"
    else:
        number = f"{amount:,.2f}"
    symbol = CURRENCY_SYMBOLS.get(currency, "$")
    return f"{symbol} {number} {currency}"


def _expense_block(expense: Expense) -> str:
    info = category_info(expense.category)
    lines = [
        f"💰 {format_amount(expense.amount, expense.currency)}",
        f"🏪 {expense.merchant}",
        f"📁 {info.label}",
        f"📅 {expense.date.isoformat()}",
    ]
    if expense.description:
        lines.append(f"📝 {expense.description}")
    return "\n".join(lines)


def saved(expense: Expense, confidence: float | None = None) -> str:
    emoji = category_info(expense.category).emoji
    text = f"✅ {emoji} Expense saved\n\n{_expense_block(expense)}"
    if confidence is not None:
        text += f"\n\nConfidence: {round(confidence * 100)}%"
    return text


def duplicate_detected(candidate: ExtractedExpenseCandidate) -> str:
    return (
        "⚠️ Duplicate expense detected\n\n"
        f"You already have {format_amount(candidate.amount, candidate.currency)} "
        f"at {candidate.merchant} on {candidate.date.isoformat()}.\n\n"
        'Reply "si" to replace the previous one.'
    )


def replaced(expense: Expense) -> str:
    emoji = category_info(expense.category).emoji
    return f"✅ {emoji} Expense updated\n\n{_expense_block(expense)}"


def deleted(expense: Expense) -> str:
    return (
        "🗑️ Expense deleted\n\n"
        f"Removed: {format_amount(expense.amount, expense.currency)} at {expense.merchant} "
        f"({expense.date.isoformat()})"
    )


def currency_changed(expense: Expense, new_currency: str) -> str:
    return (
        "💱 Currency updated\n\n"
        f"{expense.merchant}: {format_amount(expense.amount, expense.currency)} → {new_currency}"
    )


def error(message: str) -> str:
    return f"❌ Error: {message}"


def not_a_receipt(reason: str) -> str:
    return f"🤔 That doesn't look like a payment receipt: {reason}"


def voice_heard(transcript: str) -> str:
    return f'📝 I heard: "{transcript}"\n\n⏳ Processing...'


def bank_setup(address: str) -> str:
    return (
        "🏦 Connect bank notifications\n\n"
        "To record your card expenses automatically, set up email notifications:\n\n"
        "1. Open your bank app (Interbank, BCP, etc.)\n"
        "2. Enable email notifications\n"
        "3. Use this address:\n\n"
        f"📧 {address}\n\n"
        "Done! Every card purchase will be recorded here automatically."
    )


def link_code(code: str, dashboard_url: str, ttl_minutes: int) -> str:
    return (
        "🔗 Link code\n\n"
        f"Your code is: {code}\n\n"
        f"1. Open the dashboard:\n{dashboard_url}\n\n"
        "2. Enter this code\n"
        "3. Done! You'll see your expenses\n\n"
        f"⏰ The code expires in {ttl_minutes} minutes."
    )


def _currency_totals(totals: dict[str, Decimal]) -> list[str]:
    return [f"💰 Total: {format_amount(total, code)}" for code, total in sorted(totals.items())]


def monthly_summary(expenses: Sequence[Expense], totals: dict[str, Decimal]) -> str:
    lines = ["📅 This month's expenses", ""]
    for expense in expenses[:MONTHLY_PREVIEW_LIMIT]:
        emoji = category_info(expense.category).emoji
        lines.append(f"{emoji} {format_amount(expense.amount, expense.currency)} - {expense.merchant}")
    if len(expenses) > MONTHLY_PREVIEW_LIMIT:
        lines.append(f"… and {len(expenses) - MONTHLY_PREVIEW_LIMIT} more")
    lines.append("")
    lines.extend(_currency_totals(totals))
    return "\n".join(lines)


def category_breakdown(totals: dict[str, dict[str, Decimal]]) -> str:
    lines = ["📊 Expenses by category", ""]
    ordered = sorted(totals.items(), key=lambda item: sum(item[1].values()), reverse=True)
    for category, per_currency in ordered:
        info = category_info(category)
        amounts = ", ".join(
            format_amount(total, code) for code, total in sorted(per_currency.items())
        )
        lines.append(f"{info.emoji} {info.label}: {amounts}")
    return "\n".join(lines)


def bank_email_saved(expense: Expense) -> str:
    emoji = category_info(expense.category).emoji
    return (
        f"📧 {emoji} Automatic expense recorded\n\n"
        f"{_expense_block(expense)}\n\n"
        "💳 Detected from your bank notification email"
    )
