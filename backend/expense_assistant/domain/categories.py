"""Static category and currency configuration shared by extraction and formatting.

The extractor prompts are built from ``CATEGORY_VALUES`` so the producer and the
normalizer's clamp set stay in lockstep.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Category(str, Enum):
    FOOD = "food"
    TRANSPORT = "transport"
    HEALTH = "health"
    ENTERTAINMENT = "entertainment"
    UTILITIES = "utilities"
    SHOPPING = "shopping"
    EDUCATION = "education"
    HOME = "home"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class CategoryInfo:
    emoji: str
    label: str
    color: str


CATEGORY_VALUES: tuple[str, ...] = tuple(category.value for category in Category)

CATEGORY_INFO: dict[Category, CategoryInfo] = {
    Category.FOOD: CategoryInfo("🍔", "Food", "hsl(25, 95%, 53%)"),
    Category.TRANSPORT: CategoryInfo("🚗", "Transport", "hsl(217, 91%, 60%)"),
    Category.HEALTH: CategoryInfo("💊", "Health", "hsl(142, 71%, 45%)"),
    Category.ENTERTAINMENT: CategoryInfo("🎬", "Entertainment", "hsl(280, 87%, 53%)"),
    Category.UTILITIES: CategoryInfo("📱", "Utilities", "hsl(199, 89%, 48%)"),
    Category.SHOPPING: CategoryInfo("🛍️", "Shopping", "hsl(340, 82%, 52%)"),
    Category.EDUCATION: CategoryInfo("📚", "Education", "hsl(47, 96%, 53%)"),
    Category.HOME: CategoryInfo("🏠", "Home", "hsl(173, 80%, 40%)"),
    Category.OTHER: CategoryInfo("📦", "Other", "hsl(215, 14%, 45%)"),
}

# Tags emitted by older Spanish prompts; translated once at the extraction boundary.
LEGACY_CATEGORY_ALIASES: dict[str, str] = {
    "alimentacion": "food",
    "alimentación": "food",
    "transporte": "transport",
    "salud": "health",
    "entretenimiento": "entertainment",
    "servicios": "utilities",
    "compras": "shopping",
    "educacion": "education",
    "educación": "education",
    "hogar": "home",
    "otros": "other",
}

SUPPORTED_CURRENCIES: tuple[str, ...] = ("PEN", "COP", "CLP", "USD", "MXN", "ARS", "EUR")

CURRENCY_SYMBOLS: dict[str, str] = {
    "CLP": "$",
    "COP": "$",
    "USD": "$",
    "PEN": "S/",
    "MXN": "$",
    "ARS": "$",
    "EUR": "€",
}


def category_info(value: str) -> CategoryInfo:
    try:
        return CATEGORY_INFO[Category(value)]
    except ValueError:
        return CATEGORY_INFO[Category.OTHER]
