"""Stock bookkeeping for order creation, cancellation and returns.

Decrements are a single conditional UPDATE so two orders racing for the last
units cannot both succeed: whichever statement runs second matches no row.
"""

from __future__ import annotations

import logging

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.core.errors import InsufficientQuantity, ProductNotAvailable
from marketplace.domain.catalog.products import get_product, is_available
from marketplace.persistence.models import ProductModel

logger = logging.getLogger(__name__)


def stock_status_for(product: ProductModel, low_stock_threshold: int) -> str:
    if product.stock_status == "discontinued" or not product.track_quantity:
        return product.stock_status
    if product.stock_quantity <= 0:
        return "pre_order" if product.allow_backorders else "out_of_stock"
    if product.stock_quantity <= low_stock_threshold:
        return "low_stock"
    return "in_stock"


class InventoryAdjuster:
    def __init__(self, session: Session, low_stock_threshold: int | None = None):
        self.session = session
        if low_stock_threshold is None:
            low_stock_threshold = get_settings().low_stock_threshold
        self.low_stock_threshold = low_stock_threshold

    def check_available(self, product: ProductModel, quantity: int) -> None:
        if not is_available(product):
            raise ProductNotAvailable(f"product {product.name} is not available")
        if product.track_quantity and not product.allow_backorders and product.stock_quantity < quantity:
            raise InsufficientQuantity(
                f"insufficient quantity for {product.name}: requested {quantity}, "
                f"available {product.stock_quantity}"
            )

    def decrement(self, product_id: str, quantity: int) -> ProductModel:
        product = get_product(self.session, product_id)
        if not product.track_quantity:
            return product

        stmt = (
            update(ProductModel)
            .where(ProductModel.id == product_id)
            .where(
                or_(
                    ProductModel.allow_backorders.is_(True),
                    ProductModel.stock_quantity >= quantity,
                )
            )
            .values(stock_quantity=ProductModel.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            logger.warning("stock decrement refused: product_id=%s quantity=%s", product_id, quantity)
            raise InsufficientQuantity(f"insufficient quantity for {product.name}: requested {quantity}")
        return self._refresh_status(product_id)

    def restore(self, product_id: str, quantity: int) -> ProductModel | None:
        product = self.session.get(ProductModel, product_id)
        if product is None:
            logger.warning("stock restore skipped, product gone: product_id=%s quantity=%s", product_id, quantity)
            return None
        if not product.track_quantity:
            return product

        self.session.execute(
            update(ProductModel)
            .where(ProductModel.id == product_id)
            .values(stock_quantity=ProductModel.stock_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        return self._refresh_status(product_id)

    def _refresh_status(self, product_id: str) -> ProductModel:
        product = self.session.get(ProductModel, product_id, populate_existing=True)
        status = stock_status_for(product, self.low_stock_threshold)
        if status != product.stock_status:
            product.stock_status = status
            self.session.flush()
        return product
