"""Classifies inbound chat text into a bot action."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from .domain.categories import SUPPORTED_CURRENCIES
from .duplicates import is_affirmative, is_negative

HELP_COMMANDS = frozenset({"/start", "/ayuda", "/help", "ayuda", "help", "hola"})
MONTHLY_COMMANDS = frozenset({"/mes", "/resumen", "mes", "resumen", "/summary", "summary"})
CATEGORY_COMMANDS = frozenset({"/categorias", "categorias", "/categories", "categories"})
DELETE_COMMANDS = frozenset({"/borrar", "borrar", "eliminar", "/delete"})
LINK_COMMANDS = frozenset({"/vincular", "/link", "vincular"})
BANK_COMMANDS = frozenset({"/banco", "banco", "/bank"})

CURRENCY_COMMAND_RE = re.compile(
    r"^(?:/moneda|moneda|cambiar|currency|/currency)\s+("
    + "|".join(code.lower() for code in SUPPORTED_CURRENCIES)
    + r")$",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class ShowHelp:
    pass


@dataclass(frozen=True, slots=True)
class MonthlySummary:
    pass


@dataclass(frozen=True, slots=True)
class CategoryBreakdown:
    pass


@dataclass(frozen=True, slots=True)
class DeleteLast:
    pass


@dataclass(frozen=True, slots=True)
class ChangeCurrency:
    code: str


@dataclass(frozen=True, slots=True)
class LinkAccountRequest:
    pass


@dataclass(frozen=True, slots=True)
class BankSetupInstructions:
    pass


@dataclass(frozen=True, slots=True)
class ConfirmPendingDuplicate:
    pass


@dataclass(frozen=True, slots=True)
class CancelPendingDuplicate:
    pass


@dataclass(frozen=True, slots=True)
class ExtractAsExpense:
    text: str


Intent = Union[
    ShowHelp,
    MonthlySummary,
    CategoryBreakdown,
    DeleteLast,
    ChangeCurrency,
    LinkAccountRequest,
    BankSetupInstructions,
    ConfirmPendingDuplicate,
    CancelPendingDuplicate,
    ExtractAsExpense,
]


def route(text: str, has_pending: bool = False) -> Intent:
    """Map message text to an intent; anything unrecognised is sent to extraction."""
    lowered = text.strip().lower()
    # Group chats address commands as /cmd@botname.
    lowered = re.sub(r"^(/\w+)@\w+", r"\1", lowered)

    if has_pending and is_affirmative(lowered):
        return ConfirmPendingDuplicate()
    if has_pending and is_negative(lowered):
        return CancelPendingDuplicate()

    if lowered in HELP_COMMANDS:
        return ShowHelp()
    if lowered in LINK_COMMANDS:
        return LinkAccountRequest()
    if lowered in MONTHLY_COMMANDS:
        return MonthlySummary()
    if lowered in CATEGORY_COMMANDS:
        return CategoryBreakdown()
    if lowered in DELETE_COMMANDS:
        return DeleteLast()
    if lowered in BANK_COMMANDS:
        return BankSetupInstructions()

    currency = CURRENCY_COMMAND_RE.match(lowered)
    if currency:
        return ChangeCurrency(code=currency.group(1).upper())

    return ExtractAsExpense(text=text.strip())
