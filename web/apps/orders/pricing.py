"""Order pricing: subtotal, flat shipping fee, coupon discount and total.

Amounts are ``Decimal`` naira quantized to two places with half-up
rounding. The gateway is paid in kobo, see ``to_minor_units``.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional

from django.conf import settings

from .domain import OrderLine, Pricing

CENT = Decimal("0.01")

DEFAULT_COUPON_RATES = {
    "SAVE10": Decimal("0.10"),
    "SAVE20": Decimal("0.20"),
    "NEWUSER": Decimal("0.15"),
    "WELCOME": Decimal("0.05"),
}


def D(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x or "0"))


def round_money(x) -> Decimal:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Convert a naira amount to kobo."""
    return int((D(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PricingCalculator:
    """Deterministic pricing of order lines.

    Args:
        shipping_fee: Flat shipping fee applied to every order.
        coupon_rates: Mapping of upper-case coupon code to percentage rate.
        currency: ISO currency code stamped on the result.
    """

    def __init__(
        self,
        shipping_fee=None,
        coupon_rates: Optional[Mapping[str, Decimal]] = None,
        currency: str | None = None,
    ):
        self.shipping_fee = round_money(
            shipping_fee if shipping_fee is not None else getattr(settings, "ORDERS_SHIPPING_FEE", 2500)
        )
        rates = coupon_rates if coupon_rates is not None else getattr(settings, "ORDERS_COUPON_RATES", DEFAULT_COUPON_RATES)
        self.coupon_rates = {code.upper(): D(rate) for code, rate in rates.items()}
        self.currency = currency or getattr(settings, "ORDERS_CURRENCY", "NGN")

    def discount_for(self, coupon_code: Optional[str], subtotal: Decimal) -> Decimal:
        """Percentage discount for a coupon, rounded to whole naira.

        Unknown coupons give no discount; the discount never exceeds the
        subtotal.
        """
        if not coupon_code:
            return Decimal("0.00")
        rate = self.coupon_rates.get(coupon_code.strip().upper(), Decimal("0"))
        discount = (subtotal * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return round_money(min(discount, subtotal))

    def price(self, lines: Iterable[OrderLine], coupon_code: Optional[str] = None) -> Pricing:
        subtotal = round_money(sum((line.total_price for line in lines), Decimal("0")))
        discount = self.discount_for(coupon_code, subtotal)
        total = round_money(subtotal + self.shipping_fee - discount)
        return Pricing(
            subtotal=subtotal,
            shipping_cost=self.shipping_fee,
            discount=discount,
            total=total,
            currency=self.currency,
            coupon_code=coupon_code.strip().upper() if coupon_code and discount > 0 else None,
        )
