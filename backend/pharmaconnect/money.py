# Overview: Decimal helpers for money columns.

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Coerce DB/JSON numbers into Decimal without float artifacts."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value) -> str | None:
    """Serialize a money column as a fixed two-decimal string."""
    if value is None:
        return None
    return str(quantize_money(value))
