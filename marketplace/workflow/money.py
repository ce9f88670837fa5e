from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any


ZERO = Decimal("0.00")
_CENT = Decimal("0.01")


def to_money(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return default
    if not amount.is_finite():
        return default
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def parse_money(value: Any) -> Decimal | None:
    """Like ``to_money`` but returns None for unparseable input so callers can reject it."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return (unit_price * Decimal(int(quantity))).quantize(_CENT, rounding=ROUND_HALF_UP)


def money_str(value: Any) -> str:
    return str(to_money(value))
