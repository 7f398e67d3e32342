"""
Pricing policy: how tax, shipping and discounts are composed on top of the subtotal.

The Order service does not own business rates. It asks a policy for the
components and only insists that the total is their sum.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Protocol

from . import config

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class PricingPolicy(Protocol):
    def quote(self, subtotal: Decimal) -> Dict[str, Decimal]:
        """Return tax_amount, shipping_amount and discount_amount for a subtotal."""
        ...


class FlatRatePricing:
    """Percentage tax on the subtotal plus a flat shipping fee."""

    def __init__(self, tax_rate: Decimal = Decimal("0"), shipping_amount: Decimal = Decimal("0"),
                 currency: str = "USD"):
        self.tax_rate = Decimal(str(tax_rate))
        self.shipping_amount = money(shipping_amount)
        self.currency = currency

    def quote(self, subtotal: Decimal) -> Dict[str, Decimal]:
        return {
            "tax_amount": money(Decimal(str(subtotal)) * self.tax_rate),
            "shipping_amount": self.shipping_amount,
            "discount_amount": money(0),
        }


def default_policy() -> FlatRatePricing:
    return FlatRatePricing(config.TAX_RATE, config.FLAT_SHIPPING_AMOUNT, config.CURRENCY)


def price_order(subtotal: Decimal, policy: PricingPolicy, currency: str = "USD") -> Dict:
    """Full financial breakdown for an order: components plus their sum."""
    subtotal = money(subtotal)
    components = policy.quote(subtotal)
    tax = money(components.get("tax_amount", 0))
    shipping = money(components.get("shipping_amount", 0))
    discount = money(components.get("discount_amount", 0))
    return {
        "subtotal": subtotal,
        "tax_amount": tax,
        "shipping_amount": shipping,
        "discount_amount": discount,
        "total": subtotal + tax + shipping - discount,
        "currency": getattr(policy, "currency", currency),
    }
