from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.persistence.models import CartModel


def convert_active_cart(
    session: Session,
    user_id: str,
    order_id: str,
    at: datetime,
    cart_id: str | None = None,
) -> CartModel | None:
    """Mark the customer's active cart as converted into ``order_id``.

    Customers without a cart simply get ``None`` back.
    """
    stmt = select(CartModel).where(CartModel.user_id == user_id, CartModel.status == "active")
    if cart_id:
        stmt = stmt.where(CartModel.id == cart_id)
    cart = session.scalars(stmt.order_by(CartModel.updated_at.desc()).limit(1)).first()
    if cart is None:
        return None
    cart.status = "converted"
    cart.converted_order_id = order_id
    cart.converted_at = at
    cart.updated_at = at
    return cart
