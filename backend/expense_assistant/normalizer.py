"""Category/currency normalization applied to every extracted candidate."""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import date

from .config import get_settings
from .domain.categories import CATEGORY_VALUES, SUPPORTED_CURRENCIES, Category
from .domain.entities import ExtractedExpenseCandidate

settings = get_settings()

FALLBACK_MERCHANT = "Expense"

_EDGE_PUNCTUATION = " \t*-_.,;:|/\\\"'"


def clamp_category(value: str | None) -> str:
    return value if value in CATEGORY_VALUES else Category.OTHER.value


def normalize_currency(value: str | None, preferred: str | None = None) -> str:
    for candidate in (value, preferred, settings.default_currency):
        if not candidate:
            continue
        code = str(candidate).strip().upper()
        if code in SUPPORTED_CURRENCIES:
            return code
    return settings.default_currency


def clean_merchant(value: str | None, max_length: int | None = None) -> str:
    limit = max_length or settings.merchant_max_length
    if not value:
        return FALLBACK_MERCHANT
    cleaned = re.sub(r"\s+", " ", str(value)).strip(_EDGE_PUNCTUATION)
    if not cleaned:
        return FALLBACK_MERCHANT
    if cleaned.islower() or cleaned.isupper():
        cleaned = cleaned.title()
    return cleaned[:limit].rstrip()


def normalize(
    candidate: ExtractedExpenseCandidate,
    preferred_currency: str | None = None,
    today: date | None = None,
) -> ExtractedExpenseCandidate:
    """Return a candidate whose fields all satisfy the Expense invariants (except amount)."""
    description = (candidate.description or "").strip() or None
    return replace(
        candidate,
        category=clamp_category(candidate.category),
        currency=normalize_currency(candidate.currency, preferred_currency),
        merchant=clean_merchant(candidate.merchant),
        description=description,
        date=candidate.date or today or date.today(),
    )
