"""Role-shaped JSON views of the order aggregate."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from marketplace.core.clock import isoformat_z
from marketplace.core.security import Actor
from marketplace.persistence.models import (
    OrderItemModel,
    OrderModel,
    PaymentModel,
    ReturnRequestModel,
    StatusHistoryModel,
    VendorOrderModel,
)


def money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return f"{Decimal(value):.2f}"


def item_to_dict(item: OrderItemModel) -> dict[str, Any]:
    return {
        "line": item.position,
        "product_id": item.product_id,
        "vendor_id": item.vendor_id,
        "store_id": item.store_id,
        "name": item.name,
        "sku": item.sku,
        "image_url": item.image_url,
        "unit_price": money(item.unit_price),
        "original_price": money(item.original_price),
        "quantity": item.quantity,
        "line_total": money(item.line_total),
        "weight_kg": str(item.weight_kg) if item.weight_kg is not None else None,
        "dimensions": item.dimensions,
        "variant": item.variant,
        "customizations": item.customizations,
        "status": item.status,
    }


def vendor_order_to_dict(vendor_order: VendorOrderModel) -> dict[str, Any]:
    return {
        "vendor_id": vendor_order.vendor_id,
        "store_id": vendor_order.store_id,
        "subtotal": money(vendor_order.subtotal),
        "status": vendor_order.status,
        "tracking": vendor_order.tracking,
        "notes": vendor_order.notes,
        "shipped_at": isoformat_z(vendor_order.shipped_at),
        "delivered_at": isoformat_z(vendor_order.delivered_at),
    }


def history_to_dict(entry: StatusHistoryModel, include_actor: bool = True) -> dict[str, Any]:
    data = {
        "status": entry.status,
        "timestamp": isoformat_z(entry.timestamp),
        "notes": entry.notes,
        "location": entry.location,
    }
    if include_actor:
        data["changed_by"] = entry.changed_by
    return data


def return_to_dict(ret: ReturnRequestModel) -> dict[str, Any]:
    return {
        "id": ret.id,
        "requested_by": ret.requested_by,
        "items": ret.items,
        "reason": ret.reason,
        "description": ret.description,
        "status": ret.status,
        "refund_amount": money(ret.refund_amount),
        "processed_notes": ret.processed_notes,
        "requested_at": isoformat_z(ret.requested_at),
        "approved_at": isoformat_z(ret.approved_at),
        "rejected_at": isoformat_z(ret.rejected_at),
        "received_at": isoformat_z(ret.received_at),
        "refunded_at": isoformat_z(ret.refunded_at),
    }


def pricing_to_dict(order: OrderModel) -> dict[str, Any]:
    return {
        "subtotal": money(order.subtotal),
        "coupon_discount": money(order.coupon_discount),
        "tax": money(order.tax),
        "shipping": money(order.shipping_cost),
        "total_amount": money(order.total_amount),
        "currency": order.currency,
    }


def _visible_notes(order: OrderModel, actor: Actor) -> dict[str, Any]:
    notes = order.notes or {}
    if actor.is_admin:
        return dict(notes)
    visible = {"customer": notes.get("customer")}
    if actor.is_vendor:
        visible["vendor"] = notes.get("vendor")
    return visible


def order_to_dict(order: OrderModel, actor: Actor) -> dict[str, Any]:
    """Full order view for owner and admin; vendors on a shared order see only their part."""
    vendor_scoped = actor.is_vendor and not actor.is_admin and order.user_id != actor.id
    items = [i for i in order.items if not vendor_scoped or i.vendor_id == actor.id]
    vendor_orders = [
        vo for vo in order.vendor_orders.values() if not vendor_scoped or vo.vendor_id == actor.id
    ]
    return {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "customer": order.customer_info,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "items": [item_to_dict(i) for i in items],
        "vendor_orders": [vendor_order_to_dict(vo) for vo in vendor_orders],
        "pricing": pricing_to_dict(order),
        "coupon": order.coupon,
        "shipping": order.shipping,
        "billing": order.billing,
        "notes": _visible_notes(order, actor),
        "status_history": [history_to_dict(h) for h in order.status_history],
        "returns": [return_to_dict(r) for r in order.returns.values()],
        "source": order.source,
        "ordered_at": isoformat_z(order.ordered_at),
        "confirmed_at": isoformat_z(order.confirmed_at),
        "shipped_at": isoformat_z(order.shipped_at),
        "delivered_at": isoformat_z(order.delivered_at),
        "cancelled_at": isoformat_z(order.cancelled_at),
        "version": order.version,
    }


def order_summary(order: OrderModel, vendor_id: str | None = None) -> dict[str, Any]:
    items = [i for i in order.items if vendor_id is None or i.vendor_id == vendor_id]
    summary = {
        "id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "item_count": sum(i.quantity for i in items),
        "total_amount": money(order.total_amount),
        "currency": order.currency,
        "ordered_at": isoformat_z(order.ordered_at),
    }
    if vendor_id is not None:
        vendor_order = order.vendor_orders.get(vendor_id)
        summary["vendor_status"] = vendor_order.status if vendor_order else None
        summary["vendor_subtotal"] = money(vendor_order.subtotal) if vendor_order else None
    return summary


def timeline(order: OrderModel) -> list[dict[str, Any]]:
    return [history_to_dict(h) for h in order.status_history]


def tracking_view(order: OrderModel) -> dict[str, Any]:
    """Public tracking page; no customer identity, prices or actor ids."""
    shipping = order.shipping or {}
    return {
        "order_number": order.order_number,
        "status": order.status,
        "shipping": {
            "method": shipping.get("method"),
            "carrier": shipping.get("carrier"),
            "tracking_number": shipping.get("tracking_number"),
            "tracking_url": shipping.get("tracking_url"),
            "estimated_delivery": shipping.get("estimated_delivery"),
            "shipped_at": shipping.get("shipped_at"),
        },
        "shipments": [
            {"status": vo.status, "tracking": vo.tracking, "shipped_at": isoformat_z(vo.shipped_at)}
            for vo in order.vendor_orders.values()
        ],
        "ordered_at": isoformat_z(order.ordered_at),
        "delivered_at": isoformat_z(order.delivered_at),
        "timeline": [history_to_dict(h, include_actor=False) for h in order.status_history],
    }


def invoice(order: OrderModel, payments: list[PaymentModel]) -> dict[str, Any]:
    billing = order.billing or {}
    return {
        "invoice_number": f"INV-{order.order_number}",
        "order_number": order.order_number,
        "issued_at": isoformat_z(order.ordered_at),
        "customer": order.customer_info,
        "billing_address": billing.get("address"),
        "shipping_address": (order.shipping or {}).get("address"),
        "lines": [
            {
                "description": i.name + (f" ({i.variant['name']})" if i.variant else ""),
                "sku": i.sku,
                "vendor_id": i.vendor_id,
                "quantity": i.quantity,
                "unit_price": money(i.unit_price),
                "line_total": money(i.line_total),
            }
            for i in order.items
        ],
        "totals": pricing_to_dict(order),
        "payment": {
            "status": order.payment_status,
            "method": order.payment_method,
            "transactions": [
                {
                    "reference": p.transaction_ref,
                    "amount": money(p.amount),
                    "refunded_amount": money(p.refunded_amount),
                    "status": p.status,
                    "paid_at": isoformat_z(p.created_at),
                }
                for p in payments
            ],
        },
    }
