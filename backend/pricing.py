import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Mapping

from errors import ValidationError


def round_amount(value) -> int:
    """Round to the nearest whole unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _non_negative_number(value, field: str) -> float:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"Cart item {field} is missing")
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Cart item {field} is invalid")
    if not math.isfinite(numeric) or numeric < 0:
        raise ValidationError(f"Cart item {field} is invalid")
    return numeric


def compute_totals(items: Iterable[Mapping]) -> Dict[str, int]:
    subtotal = 0.0
    total_protein = 0.0
    total_calories = 0.0
    for item in items:
        quantity = _non_negative_number(item.get("qty"), "quantity")
        if quantity < 1:
            raise ValidationError("Invalid quantity")
        subtotal += _non_negative_number(item.get("price"), "price") * quantity
        total_protein += float(item.get("protein") or 0) * quantity
        total_calories += float(item.get("calories") or 0) * quantity
    return {
        "subtotal": round_amount(subtotal),
        "totalProtein": round_amount(total_protein),
        "totalCalories": round_amount(total_calories),
    }


def compute_discount(subtotal, coupon: Mapping) -> int:
    value = float(coupon.get("value") or 0)
    if coupon.get("type") == "flat":
        discount = value
    else:
        discount = round_amount(subtotal * value / 100)
        max_discount = float(coupon.get("maxDiscount") or 0)
        if max_discount > 0:
            discount = min(discount, max_discount)
    discount = min(discount, subtotal)
    return max(round_amount(discount), 0)


def compute_payable(subtotal: int, discount: int) -> int:
    return max(subtotal - discount, 0)


def to_minor_units(amount: int) -> int:
    # paise
    return int(amount) * 100
