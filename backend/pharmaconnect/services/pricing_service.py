# Overview: Service-layer pricing for order lines; discount and "buy N get M free" bonus rules.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from ..errors import ValidationError
from pharmaconnect.money import quantize_money, to_decimal
from pharmaconnect.validation import is_ascii_integer
"""
Marketplace Pricing Rules (authoritative)

Given unit price p, discount percent d in [0, 100], bonus pair (b, f) and
requested quantity q:

    discounted_unit   = p * (1 - d / 100)
    free_units        = floor(q / (b + f)) * f      when b > 0 and f > 0, else 0
    chargeable        = max(0, q - free_units)
    line_total        = discounted_unit * chargeable
    effective_unit    = line_total / q               (0 when q == 0)

- calculate_line_pricing is pure and never raises; offers are normalized by
  normalize_offer before it is called.
- The effective unit price is what an OrderItem stores, so historic orders
  stay reproducible after catalog offers change.
- Line totals are exact Decimals; rounding to cents happens once, on totals.
- Order totals are summed from effective_unit * q, so the persisted items
  reproduce the invoice amount to the cent.
"""

EFFECTIVE_PRICE_QUANT = Decimal("0.000001")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class LinePricing:
    discounted_unit_price: Decimal
    chargeable_quantity: int
    free_quantity: int
    line_total: Decimal
    effective_unit_price: Decimal


@dataclass(frozen=True)
class Offer:
    discount_percent: Decimal
    bonus_buy_quantity: int
    bonus_free_quantity: int


# =============================================================================
# VALIDATION
# =============================================================================

def _parse_bonus(value, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a non-negative integer", field=field)
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, Decimal) and value == value.to_integral_value():
        parsed = int(value)
    elif isinstance(value, str) and is_ascii_integer(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field} must be a non-negative integer", field=field)
    if parsed < 0:
        raise ValidationError(f"{field} must be a non-negative integer", field=field)
    return parsed


def normalize_offer(discount_percent=None, bonus_buy_quantity=None, bonus_free_quantity=None) -> Offer:
    """
    Validate raw offer values before pricing.

    - discount: numeric, clamped into [0, 100]; missing means 0
    - bonus quantities: non-negative integers; None and 0 both mean "no bonus"
    - a bonus is a pair: one side set without the other is rejected
    """
    if discount_percent is None or discount_percent == "":
        discount = Decimal("0")
    else:
        if isinstance(discount_percent, bool):
            raise ValidationError("discount_percent must be a number", field="discount_percent")
        try:
            discount = Decimal(str(discount_percent).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError("discount_percent must be a number", field="discount_percent")
        if not discount.is_finite():
            raise ValidationError("discount_percent must be a number", field="discount_percent")
    discount = max(Decimal("0"), min(HUNDRED, discount))

    buy = _parse_bonus(bonus_buy_quantity, "bonus_buy_quantity")
    free = _parse_bonus(bonus_free_quantity, "bonus_free_quantity")
    if buy > 0 and free == 0:
        raise ValidationError(
            "bonus_free_quantity is required when bonus_buy_quantity is set",
            field="bonus_free_quantity",
        )
    if free > 0 and buy == 0:
        raise ValidationError(
            "bonus_buy_quantity is required when bonus_free_quantity is set",
            field="bonus_buy_quantity",
        )

    return Offer(discount_percent=discount, bonus_buy_quantity=buy, bonus_free_quantity=free)


# =============================================================================
# CALCULATION
# =============================================================================

def calculate_line_pricing(
    unit_price,
    discount_percent,
    bonus_buy_quantity: int,
    bonus_free_quantity: int,
    quantity: int,
) -> LinePricing:
    """Pure line pricing. Identical inputs always give identical outputs."""
    price = to_decimal(unit_price)
    discount = to_decimal(discount_percent)
    discounted_unit = price * (1 - discount / HUNDRED)

    free_units = 0
    chargeable = quantity
    if bonus_buy_quantity > 0 and bonus_free_quantity > 0:
        group_size = bonus_buy_quantity + bonus_free_quantity
        free_units = (quantity // group_size) * bonus_free_quantity
        chargeable = max(0, quantity - free_units)

    line_total = discounted_unit * chargeable
    if quantity > 0:
        effective_unit = (line_total / quantity).quantize(EFFECTIVE_PRICE_QUANT, rounding=ROUND_HALF_UP)
    else:
        effective_unit = Decimal("0")

    return LinePricing(
        discounted_unit_price=discounted_unit,
        chargeable_quantity=chargeable,
        free_quantity=free_units,
        line_total=line_total,
        effective_unit_price=effective_unit,
    )


def price_product_line(product, quantity: int) -> LinePricing:
    """Price `quantity` units of a catalog product with its current offer."""
    offer = normalize_offer(
        product.discount_percent,
        product.bonus_buy_quantity,
        product.bonus_free_quantity,
    )
    return calculate_line_pricing(
        product.price,
        offer.discount_percent,
        offer.bonus_buy_quantity,
        offer.bonus_free_quantity,
        quantity,
    )


def order_totals(line_totals, commission_rate) -> tuple[Decimal, Decimal]:
    """(total, commission) for a set of exact line totals, both in cents."""
    total = quantize_money(sum((to_decimal(t) for t in line_totals), Decimal("0")))
    commission = quantize_money(total * to_decimal(commission_rate))
    return total, commission
