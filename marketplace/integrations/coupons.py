from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from marketplace.core.config import Settings, get_settings
from marketplace.domain.orders.pricing import ZERO, to_cents

logger = logging.getLogger(__name__)


class CouponService:
    """Static coupon table from settings.

    Entries look like ``{"type": "percentage" | "fixed_amount", "value": 10,
    "min_order_amount": 50}``. Unknown or ineligible codes discount nothing.
    """

    def __init__(self, coupons: dict[str, dict[str, Any]] | None = None, settings: Settings | None = None):
        if coupons is None:
            coupons = (settings or get_settings()).coupons
        self.coupons = {code.upper(): rule for code, rule in coupons.items()}

    def lookup(self, code: str | None) -> dict[str, Any] | None:
        if not code:
            return None
        return self.coupons.get(code.strip().upper())

    def discount_for(self, code: str | None, subtotal: Decimal) -> Decimal:
        rule = self.lookup(code)
        if rule is None:
            return ZERO
        try:
            value = Decimal(str(rule.get("value", "0")))
            minimum = Decimal(str(rule.get("min_order_amount", "0")))
        except InvalidOperation:
            logger.warning("coupon rule malformed: code=%s", code)
            return ZERO
        if subtotal < minimum:
            return ZERO
        if rule.get("type") == "percentage":
            discount = subtotal * value / Decimal("100")
        elif rule.get("type") == "fixed_amount":
            discount = value
        else:
            logger.warning("coupon type unsupported: code=%s type=%s", code, rule.get("type"))
            return ZERO
        return min(to_cents(max(discount, ZERO)), subtotal)
