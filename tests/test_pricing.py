from decimal import Decimal

from orderflow.models.coupon import DiscountType
from orderflow.utils.pricing import (
    apply_discount,
    calculate_shipping,
    calculate_tax,
    final_total,
    round_currency,
    to_decimal,
)


def test_round_currency_rounds_half_up():
    assert round_currency(Decimal("0.125")) == Decimal("0.13")
    assert round_currency(Decimal("2.675")) == Decimal("2.68")
    assert round_currency(None) == Decimal("0.00")


def test_float_inputs_keep_their_printed_value():
    assert to_decimal(29.99) == Decimal("29.99")
    assert round_currency(29.99 * 2) == Decimal("59.98")


def test_percentage_discount_rounds_to_cents():
    assert apply_discount(Decimal("59.98"), DiscountType.PERCENTAGE, Decimal("10")) == Decimal("6.00")


def test_percentage_discount_respects_cap():
    amount = apply_discount(Decimal("1000.00"), "percentage", Decimal("50"), max_discount=Decimal("100"))
    assert amount == Decimal("100.00")


def test_fixed_discount_never_exceeds_subtotal():
    assert apply_discount(Decimal("15.00"), DiscountType.FIXED, Decimal("20")) == Decimal("15.00")


def test_tax_uses_configured_rate_or_override():
    assert calculate_tax(Decimal("100.00")) == Decimal("0.00")
    assert calculate_tax(Decimal("53.98"), rate=Decimal("0.08")) == Decimal("4.32")
    assert calculate_tax(Decimal("-5"), rate=Decimal("0.08")) == Decimal("0.00")


def test_shipping_tiers_by_parcel_weight():
    assert calculate_shipping(Decimal("100"), 2) == Decimal("200.00")
    assert calculate_shipping(Decimal("100"), 4) == Decimal("350.00")
    assert calculate_shipping(Decimal("100"), 12) == Decimal("500.00")


def test_shipping_is_free_at_threshold():
    assert calculate_shipping(Decimal("5000.00"), 30) == Decimal("0.00")


def test_final_total_never_negative():
    assert final_total(Decimal("10"), Decimal("25")) == Decimal("0.00")
    assert final_total(Decimal("59.98"), Decimal("6.00"), Decimal("0"), Decimal("200")) == Decimal("253.98")
