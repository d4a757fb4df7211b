from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from marketplace.core.errors import ProductNotFound, ValidationFailed
from marketplace.domain.orders.pricing import ZERO, to_cents
from marketplace.persistence.models import ProductModel

SELLABLE_STOCK_STATUSES = frozenset({"in_stock", "low_stock"})


def get_product(session: Session, product_id: str) -> ProductModel:
    product = session.get(ProductModel, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


def is_available(product: ProductModel) -> bool:
    if not product.is_active:
        return False
    if product.stock_status in SELLABLE_STOCK_STATUSES:
        return True
    return product.allow_backorders and product.stock_status != "discontinued"


def resolve_variant(product: ProductModel, variant_name: str | None) -> dict[str, Any] | None:
    if not variant_name:
        return None
    for variant in product.variants or []:
        if isinstance(variant, dict) and variant.get("name") == variant_name:
            return {
                "name": variant["name"],
                "sku": variant.get("sku"),
                "price_modifier": str(to_cents(variant.get("price_modifier", "0"))),
            }
    raise ValidationFailed(
        f"variant {variant_name!r} not offered for product {product.id}",
        code="VARIANT_NOT_FOUND",
    )


def unit_price(product: ProductModel, variant: dict[str, Any] | None = None) -> Decimal:
    price = Decimal(product.price)
    if variant:
        price += Decimal(variant.get("price_modifier", "0"))
    return max(to_cents(price), ZERO)
