from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, attribute_keyed_dict, mapped_column, relationship
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _money():
    return Numeric(12, 2)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class ProductModel(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    compare_at_price: Mapped[Optional[Decimal]] = mapped_column(_money(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # in_stock | low_stock | out_of_stock | pre_order | discontinued
    stock_status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_stock")
    track_quantity: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_backorders: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 3), nullable=True)
    dimensions: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    variants: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CartModel(Base):
    __tablename__ = "carts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # active | converted | abandoned
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    items: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    converted_order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderModel(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_orders_user_idempotency_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_info: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    subtotal: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    coupon_discount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    coupon: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)

    shipping: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    billing: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    notes: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="web")

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    request_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ordered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["OrderItemModel"]] = relationship(
        back_populates="order",
        order_by="OrderItemModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    vendor_orders: Mapped[dict[str, "VendorOrderModel"]] = relationship(
        back_populates="order",
        collection_class=attribute_keyed_dict("vendor_id"),
        order_by="VendorOrderModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    status_history: Mapped[list["StatusHistoryModel"]] = relationship(
        back_populates="order",
        order_by="StatusHistoryModel.seq_id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    returns: Mapped[dict[str, "ReturnRequestModel"]] = relationship(
        back_populates="order",
        collection_class=attribute_keyed_dict("id"),
        order_by="ReturnRequestModel.seq_id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    original_price: Mapped[Optional[Decimal]] = mapped_column(_money(), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    weight_kg: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 3), nullable=True)
    dimensions: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    variant: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    customizations: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    order: Mapped[OrderModel] = relationship(back_populates="items")


class VendorOrderModel(Base):
    __tablename__ = "vendor_orders"
    __table_args__ = (UniqueConstraint("order_id", "vendor_id", name="uq_vendor_orders_order_vendor"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    tracking: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[OrderModel] = relationship(back_populates="vendor_orders")

    __mapper_args__ = {"version_id_col": version}


class StatusHistoryModel(Base):
    __tablename__ = "order_status_history"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    order: Mapped[OrderModel] = relationship(back_populates="status_history")


class ReturnRequestModel(Base):
    __tablename__ = "return_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    seq_id: Mapped[int] = mapped_column(Integer, nullable=False)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    items: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # requested | approved | rejected | received | refunded
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="requested")
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(_money(), nullable=True)
    processed_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    order: Mapped[OrderModel] = relationship(back_populates="returns")


class PaymentModel(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method_type: Mapped[str] = mapped_column(String(32), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    # completed | partially_refunded | refunded
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")
    refunded_amount: Mapped[Decimal] = mapped_column(_money(), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RefundModel(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payments.id"), nullable=False)
    return_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    amount: Mapped[Decimal] = mapped_column(_money(), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    processed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # succeeded | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_orders_user_status", OrderModel.user_id, OrderModel.status)
Index("ix_orders_status_ordered_at", OrderModel.status, OrderModel.ordered_at)
Index("ix_order_items_vendor", OrderItemModel.vendor_id)
Index("ix_order_items_order", OrderItemModel.order_id)
Index("ix_vendor_orders_vendor_status", VendorOrderModel.vendor_id, VendorOrderModel.status)
Index("ix_status_history_order", StatusHistoryModel.order_id)
Index("ix_return_requests_order", ReturnRequestModel.order_id)
Index("ix_payments_order", PaymentModel.order_id)
Index("ix_carts_user_status", CartModel.user_id, CartModel.status)
