from decimal import Decimal

from apps.orders.domain import OrderLine
from apps.orders.pricing import PricingCalculator, to_minor_units


def _line(unit, qty):
    unit = Decimal(unit)
    return OrderLine("p", "Item", "SKU", qty, unit, unit * qty)


def test_flat_shipping_and_no_discount():
    pricing = PricingCalculator(shipping_fee=2500).price([_line("24000", 1), _line("12000", 2)])
    assert pricing.subtotal == Decimal("48000.00")
    assert pricing.shipping_cost == Decimal("2500.00")
    assert pricing.discount == Decimal("0.00")
    assert pricing.total == Decimal("50500.00")
    assert pricing.currency == "NGN"
    assert pricing.coupon_code is None


def test_known_coupon_is_case_insensitive_and_rounded_to_whole_naira():
    pricing = PricingCalculator(shipping_fee=2500).price([_line("10005", 1)], coupon_code=" save10 ")
    # 10% of 10005 = 1000.5 -> 1001
    assert pricing.discount == Decimal("1001.00")
    assert pricing.total == Decimal("11504.00")
    assert pricing.coupon_code == "SAVE10"


def test_unknown_coupon_gives_no_discount():
    pricing = PricingCalculator(shipping_fee=2500).price([_line("5000", 1)], coupon_code="BOGUS")
    assert pricing.discount == Decimal("0.00")
    assert pricing.coupon_code is None


def test_custom_rates_and_settings_fee(settings):
    settings.ORDERS_SHIPPING_FEE = 1000
    pricing = PricingCalculator(coupon_rates={"HALF": "0.5"}).price([_line("3000", 1)], coupon_code="half")
    assert pricing.shipping_cost == Decimal("1000.00")
    assert pricing.discount == Decimal("1500.00")
    assert pricing.total == Decimal("2500.00")


def test_total_is_subtotal_plus_shipping_minus_discount():
    calc = PricingCalculator(shipping_fee=2500)
    for coupon in (None, "SAVE10", "SAVE20", "NEWUSER", "WELCOME"):
        p = calc.price([_line("7333.33", 3)], coupon_code=coupon)
        assert p.total == p.subtotal + p.shipping_cost - p.discount
        assert p.total >= 0


def test_minor_units_are_kobo():
    assert to_minor_units(Decimal("50500")) == 5_050_000
    assert to_minor_units("0.015") == 2
