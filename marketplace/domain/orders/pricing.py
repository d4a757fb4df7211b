"""Pricing engine: subtotal, shipping, tax and grand total for an order.

All amounts are ``Decimal`` rounded half-up to cents. Nothing here touches the
database; callers hand in captured line prices and weights.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

WEIGHT_THRESHOLD_KG = Decimal("10")
WEIGHT_STEP_KG = Decimal("5")
WEIGHT_STEP_SURCHARGE = Decimal("2.99")
DEFAULT_ITEM_WEIGHT_KG = Decimal("1")
DEFAULT_TAX_RATE = Decimal("0.08")
DEFAULT_PROCESSING_DAYS = 1


@dataclass(frozen=True)
class ShippingRate:
    base: Decimal
    per_extra_vendor: Decimal
    transit_days: int


SHIPPING_RATES: dict[str, ShippingRate] = {
    "standard": ShippingRate(Decimal("5.99"), Decimal("2.99"), 5),
    "express": ShippingRate(Decimal("12.99"), Decimal("5.99"), 2),
    "overnight": ShippingRate(Decimal("24.99"), Decimal("10.99"), 1),
    "pickup": ShippingRate(ZERO, ZERO, 0),
}
SHIPPING_METHODS: tuple[str, ...] = tuple(SHIPPING_RATES)


@dataclass(frozen=True)
class PricedLine:
    unit_price: Decimal
    quantity: int
    weight_kg: Decimal | None = None

    @property
    def line_total(self) -> Decimal:
        return to_cents(self.unit_price * self.quantity)

    @property
    def shipping_weight(self) -> Decimal:
        return (self.weight_kg if self.weight_kg is not None else DEFAULT_ITEM_WEIGHT_KG) * self.quantity


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    coupon_discount: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total_amount: Decimal
    total_weight_kg: Decimal
    vendor_count: int

    def as_dict(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "coupon_discount": str(self.coupon_discount),
            "tax": str(self.tax),
            "shipping": str(self.shipping_cost),
            "total_amount": str(self.total_amount),
        }


def to_cents(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def shipping_cost(method: str, total_weight_kg: Decimal, vendor_count: int) -> Decimal:
    rate = SHIPPING_RATES.get(method)
    if rate is None:
        raise ValueError(f"unsupported shipping method: {method}")
    cost = rate.base + rate.per_extra_vendor * max(vendor_count - 1, 0)
    if total_weight_kg > WEIGHT_THRESHOLD_KG:
        steps = math.ceil((total_weight_kg - WEIGHT_THRESHOLD_KG) / WEIGHT_STEP_KG)
        cost += WEIGHT_STEP_SURCHARGE * steps
    return to_cents(cost)


def estimated_delivery(
    method: str,
    now: datetime | None = None,
    processing_days: int = DEFAULT_PROCESSING_DAYS,
) -> datetime:
    rate = SHIPPING_RATES.get(method)
    transit = rate.transit_days if rate is not None else SHIPPING_RATES["standard"].transit_days
    return (now or datetime.now(timezone.utc)) + timedelta(days=processing_days + transit)


def tax_for(taxable: Decimal, rate: Decimal = DEFAULT_TAX_RATE) -> Decimal:
    return to_cents(max(taxable, ZERO) * rate)


def price_order(
    lines: Iterable[PricedLine],
    method: str,
    vendor_count: int,
    coupon_discount: Decimal = ZERO,
    tax_rate: Decimal = DEFAULT_TAX_RATE,
) -> PricingBreakdown:
    lines = list(lines)
    if not lines:
        raise ValueError("an order needs at least one line")
    subtotal = to_cents(sum((line.line_total for line in lines), ZERO))
    weight = sum((line.shipping_weight for line in lines), Decimal("0"))
    discount = min(to_cents(coupon_discount), subtotal)
    shipping = shipping_cost(method, weight, vendor_count)
    tax = tax_for(subtotal - discount + shipping, tax_rate)
    total = to_cents(subtotal - discount + tax + shipping)
    return PricingBreakdown(
        subtotal=subtotal,
        coupon_discount=discount,
        shipping_cost=shipping,
        tax=tax,
        total_amount=total,
        total_weight_kg=weight,
        vendor_count=vendor_count,
    )


def refund_amount_for(lines: Iterable[tuple[Decimal, int]]) -> Decimal:
    """Sum of captured unit price x returned quantity."""
    return to_cents(sum((Decimal(price) * qty for price, qty in lines), ZERO))
