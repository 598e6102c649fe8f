"""
Money helpers shared by the cart and order aggregates.

Every amount that gets stored or compared passes through ``round_currency``
first, so no raw binary floats ever reach a total.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from orderflow.core.config import settings

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() first so 29.99 stays 29.99 and not 29.989999999999998436805981327779591083526611328125
    return Decimal(str(value))


def round_currency(value: Optional[Number]) -> Decimal:
    """Round half-up to the smallest currency unit."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def apply_discount(
    subtotal: Number,
    kind: str,
    value: Number,
    max_discount: Optional[Number] = None,
) -> Decimal:
    """
    Compute the discount amount for ``subtotal``.

    Percentage discounts take ``value`` percent of the subtotal (optionally
    capped by ``max_discount``); fixed discounts use ``value`` literally. The
    result is always clamped to ``[0, subtotal]``.
    """
    subtotal = round_currency(subtotal)
    value = to_decimal(value)

    if str(getattr(kind, "value", kind)) == "percentage":
        amount = subtotal * value / Decimal(100)
        if max_discount is not None and amount > to_decimal(max_discount):
            amount = to_decimal(max_discount)
    else:
        amount = value

    amount = round_currency(amount)
    if amount < ZERO:
        return ZERO
    return min(amount, subtotal)


def calculate_tax(taxable: Number, rate: Optional[Number] = None) -> Decimal:
    rate = to_decimal(settings.TAX_RATE if rate is None else rate)
    taxable = max(round_currency(taxable), ZERO)
    return round_currency(taxable * rate)


def calculate_shipping(subtotal: Number, total_quantity: int) -> Decimal:
    """
    Shipping charge for an order.

    Free at or above FREE_SHIPPING_THRESHOLD, measured on the subtotal
    *before* any discount. Otherwise tiered by estimated parcel weight.
    """
    if round_currency(subtotal) >= round_currency(settings.FREE_SHIPPING_THRESHOLD):
        return ZERO

    weight = to_decimal(settings.ITEM_WEIGHT_KG) * total_quantity
    if weight <= 1:
        return round_currency(settings.SHIPPING_LIGHT_CHARGE)
    if weight <= 5:
        return round_currency(settings.SHIPPING_MEDIUM_CHARGE)
    return round_currency(settings.SHIPPING_HEAVY_CHARGE)


def final_total(subtotal: Number, discount: Number, tax: Number = ZERO, shipping: Number = ZERO) -> Decimal:
    total = round_currency(subtotal) + round_currency(tax) + round_currency(shipping) - round_currency(discount)
    return max(round_currency(total), ZERO)
