# services/tax.py
"""
Tax categories for ERP sales orders. Prices are tax inclusive, so the tax in
an amount is `amount - amount * 100 / (100 + rate)`.

Products used to carry their rate as a `tax_NN` tag; `category_from_tags`
maps those tags onto categories for products that have no category yet.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

TAX_CATEGORY_RATES = {
    "GST_18": Decimal("18"),
    "GST_12": Decimal("12"),
    "GST_5": Decimal("5"),
    "GST_0": Decimal("0"),
}

LEGACY_TAG_CATEGORIES = {
    "tax_18": "GST_18",
    "tax_12": "GST_12",
    "tax_5": "GST_5",
    "tax_0": "GST_0",
}

SHIPPING_TAX_CATEGORY = "GST_18"

CENT = Decimal("0.01")


def _tags(tags: Union[None, str, Iterable[str]]) -> list:
    if not tags:
        return []
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    return [str(t).strip() for t in tags]


def category_from_tags(tags: Union[None, str, Iterable[str]]) -> Optional[str]:
    for tag in _tags(tags):
        if tag in LEGACY_TAG_CATEGORIES:
            return LEGACY_TAG_CATEGORIES[tag]
    return None


def rate_for(category: Optional[str] = None, tags: Union[None, str, Iterable[str]] = None) -> Optional[Decimal]:
    """Rate for an explicit category, falling back to legacy tags. None when unknown."""
    if category:
        if category not in TAX_CATEGORY_RATES:
            raise ValueError(f"Unknown tax category: {category}")
        return TAX_CATEGORY_RATES[category]
    legacy = category_from_tags(tags)
    return TAX_CATEGORY_RATES[legacy] if legacy else None


def inclusive_tax(amount: Union[Decimal, float, str], rate: Union[Decimal, int, None]) -> Decimal:
    amount = Decimal(str(amount))
    if not rate:
        return Decimal("0.00")
    rate = Decimal(str(rate))
    tax = amount - amount * Decimal(100) / (Decimal(100) + rate)
    return tax.quantize(CENT, rounding=ROUND_HALF_UP)
