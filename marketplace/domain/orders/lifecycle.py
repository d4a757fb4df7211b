"""Order lifecycle controller.

Every status change funnels through :meth:`OrderLifecycleController._transition`,
which validates against the transition table, stamps timestamps and appends
exactly one history entry. Gateway calls never raise: their outcome is handed
back to the caller next to the (already mutated) order.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.canonical import request_fingerprint
from marketplace.core.clock import isoformat_z, now_utc
from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import (
    ConcurrentUpdate,
    IdempotencyKeyReused,
    InvalidStatusTransition,
    NotAuthorized,
    OrderCannotBeCancelled,
    OrderCannotBeReturned,
    OrderNotFound,
    OrderNotFulfillable,
    PaymentNotCompleted,
    RefundExceedsPayment,
    RefundNotSettled,
    ReturnQuantityExceeded,
    ReturnRequestNotFound,
    ValidationFailed,
    VendorOrderNotFound,
)
from marketplace.core.security import Actor, Capability
from marketplace.domain.carts import convert_active_cart
from marketplace.domain.catalog.products import get_product, resolve_variant, unit_price
from marketplace.domain.inventory.adjuster import InventoryAdjuster
from marketplace.domain.orders import status as st
from marketplace.domain.orders.commands import (
    AddNoteCommand,
    CancelOrderCommand,
    ConfirmPaymentCommand,
    CreateOrderCommand,
    DeliverOrderCommand,
    ProcessReturnCommand,
    RefundCommand,
    ReturnRequestCommand,
    SendMessageCommand,
    ShipOrderCommand,
    UpdateStatusCommand,
    VendorStatusCommand,
)
from marketplace.domain.orders.pricing import (
    ZERO,
    PricedLine,
    estimated_delivery,
    price_order,
    refund_amount_for,
    to_cents,
)
from marketplace.domain.orders.store import OrderStore, generate_order_number
from marketplace.integrations.coupons import CouponService
from marketplace.integrations.notifications import Notification, NotificationOutbox, order_notifications
from marketplace.integrations.payments import GatewayResult, PaymentGateway
from marketplace.persistence.models import (
    OrderItemModel,
    OrderModel,
    PaymentModel,
    RefundModel,
    ReturnRequestModel,
    VendorOrderModel,
)

logger = logging.getLogger(__name__)

_BULK_REFUSALS = (InvalidStatusTransition, OrderCannotBeCancelled, RefundNotSettled, NotAuthorized, OrderNotFound)

_TIMESTAMP_ON_STATUS = {
    st.PAYMENT_CONFIRMED: "confirmed_at",
    st.SHIPPED: "shipped_at",
    st.DELIVERED: "delivered_at",
    st.CANCELLED: "cancelled_at",
}


@dataclass
class CreateOrderResult:
    order: OrderModel
    requires_payment: bool
    replayed: bool = False


@dataclass
class RefundOutcome:
    refund: RefundModel
    result: GatewayResult

    @property
    def ok(self) -> bool:
        return self.result.ok


@dataclass
class CancelResult:
    order: OrderModel
    refund: RefundOutcome | None = None


@dataclass
class PaymentOutcome:
    order: OrderModel
    result: GatewayResult
    payment: PaymentModel | None = None


@dataclass
class ReturnOutcome:
    order: OrderModel
    return_request: ReturnRequestModel
    refund: RefundOutcome | None = None


def is_owner(order: OrderModel, actor: Actor) -> bool:
    return order.user_id == actor.id


def is_vendor_on(order: OrderModel, actor: Actor) -> bool:
    return actor.is_vendor and actor.id in order.vendor_orders


def is_sole_vendor(order: OrderModel, actor: Actor) -> bool:
    return is_vendor_on(order, actor) and len(order.vendor_orders) == 1


def can_view(order: OrderModel, actor: Actor) -> bool:
    return is_owner(order, actor) or actor.can(Capability.VIEW_ALL_ORDERS) or is_vendor_on(order, actor)


class OrderLifecycleController:
    def __init__(
        self,
        session: Session,
        gateway: PaymentGateway,
        outbox: NotificationOutbox | None = None,
        coupons: CouponService | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.outbox = outbox if outbox is not None else NotificationOutbox()
        self.coupons = coupons or CouponService(settings=self.settings)
        self.store = OrderStore(session)
        self.inventory = InventoryAdjuster(session, self.settings.low_stock_threshold)

    # -- reads -----------------------------------------------------------------

    def get(self, actor: Actor, order_id: str) -> OrderModel:
        order = self.store.get(order_id)
        self._ensure_can_view(order, actor)
        return order

    def get_by_number(self, actor: Actor, order_number: str) -> OrderModel:
        order = self.store.get_by_number(order_number)
        self._ensure_can_view(order, actor)
        return order

    def track(self, order_number: str) -> OrderModel:
        order = self.store.get_by_number(order_number)
        self.store.track_view(order)
        return order

    # -- creation ----------------------------------------------------------------

    def create(self, actor: Actor, cmd: CreateOrderCommand, idempotency_key: str | None = None) -> CreateOrderResult:
        if not actor.can(Capability.PLACE_ORDERS):
            raise NotAuthorized("not authorized to place orders", code="NOT_AUTHORIZED")

        request_hash = request_fingerprint(cmd)
        if idempotency_key:
            existing = self.store.find_by_idempotency_key(actor.id, idempotency_key)
            if existing is not None:
                # The key stays reserved after a soft delete; the order is gone for the caller.
                if existing.is_deleted:
                    raise OrderNotFound(existing.order_number)
                if existing.request_hash != request_hash:
                    raise IdempotencyKeyReused("idempotency key already used with a different request body")
                logger.info("order create replayed: order_id=%s key=%s", existing.id, idempotency_key)
                return CreateOrderResult(existing, requires_payment=self._requires_payment(existing), replayed=True)

        now = now_utc()
        lines: list[PricedLine] = []
        items: list[OrderItemModel] = []
        vendors: OrderedDict[str, dict[str, Any]] = OrderedDict()
        for position, item in enumerate(cmd.items):
            product = get_product(self.session, item.product_id)
            self.inventory.check_available(product, item.quantity)
            variant = resolve_variant(product, item.variant)
            price = unit_price(product, variant)
            line = PricedLine(price, item.quantity, product.weight_kg)
            lines.append(line)
            items.append(
                OrderItemModel(
                    position=position,
                    product_id=product.id,
                    vendor_id=product.vendor_id,
                    store_id=product.store_id,
                    name=product.name,
                    sku=(variant or {}).get("sku") or product.sku,
                    image_url=product.image_url,
                    unit_price=price,
                    original_price=product.compare_at_price,
                    quantity=item.quantity,
                    line_total=line.line_total,
                    weight_kg=product.weight_kg,
                    dimensions=product.dimensions,
                    variant=variant,
                    customizations=item.customizations,
                    status="pending",
                )
            )
            bucket = vendors.setdefault(product.vendor_id, {"store_id": product.store_id, "subtotal": ZERO})
            bucket["subtotal"] = to_cents(bucket["subtotal"] + line.line_total)

        subtotal = to_cents(sum((line.line_total for line in lines), ZERO))
        discount = self.coupons.discount_for(cmd.coupon_code, subtotal)
        breakdown = price_order(
            lines,
            cmd.shipping.method,
            vendor_count=len(vendors),
            coupon_discount=discount,
            tax_rate=self.settings.tax_rate,
        )

        shipping_address = cmd.shipping.address.model_dump() if cmd.shipping.address else None
        if cmd.billing is None or cmd.billing.same_as_shipping:
            billing = {"same_as_shipping": True, "address": shipping_address}
        else:
            billing = {"same_as_shipping": False, "address": cmd.billing.address.model_dump()}

        if isinstance(cmd.notes, str):
            notes = {"customer": cmd.notes, "vendor": None, "internal": None}
        else:
            notes = {
                "customer": cmd.notes.customer if cmd.notes else None,
                "vendor": cmd.notes.vendor if cmd.notes else None,
                "internal": None,
            }

        order = OrderModel(
            order_number=generate_order_number(now),
            user_id=actor.id,
            customer_info={"name": actor.name, "email": actor.email, "phone": actor.phone},
            status=st.PENDING,
            payment_status="pending" if breakdown.total_amount > ZERO else "not_required",
            payment_method=cmd.payment_method,
            currency=self.settings.currency,
            subtotal=breakdown.subtotal,
            coupon_discount=breakdown.coupon_discount,
            tax=breakdown.tax,
            shipping_cost=breakdown.shipping_cost,
            total_amount=breakdown.total_amount,
            coupon={"code": cmd.coupon_code, "discount": str(discount)} if discount > ZERO else None,
            shipping={
                "method": cmd.shipping.method,
                "address": shipping_address,
                "cost": str(breakdown.shipping_cost),
                "estimated_delivery": isoformat_z(
                    estimated_delivery(cmd.shipping.method, now, self.settings.processing_days)
                ),
                "carrier": None,
                "tracking_number": None,
                "tracking_url": None,
                "shipped_at": None,
            },
            billing=billing,
            notes=notes,
            source=cmd.source,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
            ordered_at=now,
            updated_at=now,
        )
        order.items = items
        for position, (vendor_id, bucket) in enumerate(vendors.items()):
            order.vendor_orders[vendor_id] = VendorOrderModel(
                vendor_id=vendor_id,
                store_id=bucket["store_id"],
                position=position,
                subtotal=bucket["subtotal"],
                status=st.VENDOR_PENDING,
            )
        self.store.append_history(order, st.PENDING, actor.id, "Order created", at=now)

        try:
            self.store.add(order)
        except IntegrityError as exc:
            raise ConcurrentUpdate("an order with this idempotency key is already being created") from exc

        for item in order.items:
            self.inventory.decrement(item.product_id, item.quantity)
        convert_active_cart(self.session, actor.id, order.id, now, cart_id=cmd.cart_id)
        self.session.flush()

        self.outbox.extend(
            order_notifications(
                "created",
                order.id,
                order.order_number,
                order.user_id,
                list(order.vendor_orders),
                item_count=len(order.items),
                amount=str(order.total_amount),
            )
        )
        logger.info(
            "order created: order_id=%s order_number=%s user_id=%s vendors=%s total=%s",
            order.id,
            order.order_number,
            order.user_id,
            len(order.vendor_orders),
            order.total_amount,
        )
        return CreateOrderResult(order, requires_payment=self._requires_payment(order))

    # -- explicit transitions --------------------------------------------------

    def cancel(self, actor: Actor, order_id: str, cmd: CancelOrderCommand) -> CancelResult:
        order = self.store.get(order_id)
        if not (is_owner(order, actor) or actor.is_admin):
            raise NotAuthorized("not authorized to cancel this order", code="NOT_AUTHORIZED")
        return self._cancel(order, actor, cmd.reason)

    def update_status(self, actor: Actor, order_id: str, cmd: UpdateStatusCommand) -> CancelResult:
        order = self.store.get(order_id)
        self._ensure_can_manage_status(order, actor)
        if cmd.status == st.CANCELLED:
            return self._cancel(order, actor, cmd.notes)

        st.assert_transition(order.status, cmd.status)
        if cmd.status in (st.REFUNDED, st.PARTIALLY_REFUNDED) and (
            st.REFUND_STATUS_FOR_PAYMENT.get(order.payment_status) != cmd.status
        ):
            raise RefundNotSettled(
                f"order {order.order_number} payment is {order.payment_status}; cannot mark it {cmd.status}"
            )
        if cmd.tracking_number or cmd.tracking_url or cmd.carrier:
            self._set_tracking(order, cmd.carrier, cmd.tracking_number, cmd.tracking_url)
        self._transition(order, cmd.status, actor.id, cmd.notes, cmd.location)
        self._cascade_to_vendor_orders(order, cmd.status)
        self.store.flush()

        self._notify_customer(order, cmd.status)
        logger.info("order status updated: order_id=%s status=%s actor_id=%s", order.id, order.status, actor.id)
        return CancelResult(order)

    def bulk_update_status(self, actor: Actor, order_ids: list[str], status: str, notes: str | None = None) -> list[dict]:
        """Apply one status to many orders; refusals are reported per order.

        Each refusal is raised before its order is touched, so successful
        updates are kept without needing a savepoint.
        """
        results: list[dict] = []
        for order_id in order_ids:
            try:
                outcome = self.update_status(actor, order_id, UpdateStatusCommand(status=status, notes=notes))
            except _BULK_REFUSALS as exc:
                results.append({"order_id": order_id, "ok": False, "error": exc.code, "detail": exc.message})
        return results

    def confirm_payment(self, actor: Actor, order_id: str, cmd: ConfirmPaymentCommand) -> PaymentOutcome:
        order = self.store.get(order_id)
        if not (is_owner(order, actor) or actor.is_admin):
            raise NotAuthorized("not authorized to pay for this order", code="NOT_AUTHORIZED")
        if order.status not in st.PAYABLE_STATUSES:
            raise InvalidStatusTransition(order.status, st.PAYMENT_CONFIRMED)

        result = self.gateway.authorize(
            order.total_amount,
            order.currency,
            cmd.payment_method,
            cmd.payment_data,
            metadata={"order_id": order.id, "order_number": order.order_number, "user_id": order.user_id},
        )
        if result.unavailable:
            logger.warning("payment gateway unavailable: order_id=%s error=%s", order.id, result.error)
            return PaymentOutcome(order, result)

        if not result.ok:
            logger.warning("payment declined: order_id=%s error=%s", order.id, result.error)
            order.payment_status = "failed"
            if order.status == st.PENDING:
                self._transition(order, st.PAYMENT_FAILED, None, f"Payment failed: {result.error}", system=True)
            self.store.flush()
            self._notify_customer(order, st.PAYMENT_FAILED)
            return PaymentOutcome(order, result)

        now = now_utc()
        payment = PaymentModel(
            order_id=order.id,
            user_id=order.user_id,
            amount=order.total_amount,
            currency=order.currency,
            method_type=cmd.payment_method,
            provider=self.gateway.provider_name,
            transaction_ref=result.reference,
            status="completed",
            refunded_amount=ZERO,
            created_at=now,
            updated_at=now,
        )
        self.store.add_record(payment)
        order.payment_method = cmd.payment_method
        order.payment_status = "completed"
        self._transition(order, st.PAYMENT_CONFIRMED, actor.id, "Payment confirmed", at=now)
        self.store.flush()

        self.outbox.extend(
            order_notifications(
                "payment_confirmed",
                order.id,
                order.order_number,
                order.user_id,
                list(order.vendor_orders),
                amount=str(order.total_amount),
            )
        )
        logger.info("payment confirmed: order_id=%s transaction_ref=%s", order.id, result.reference)
        return PaymentOutcome(order, result, payment)

    def mark_shipped(self, actor: Actor, order_id: str, cmd: ShipOrderCommand) -> OrderModel:
        order = self.store.get(order_id)
        self._ensure_can_fulfill(order, actor)
        if actor.is_admin or is_sole_vendor(order, actor):
            st.assert_transition(order.status, st.SHIPPED)
            self._set_tracking(order, cmd.carrier, cmd.tracking_number, cmd.tracking_url)
            self._transition(order, st.SHIPPED, actor.id, cmd.notes or f"Shipped via {cmd.carrier}")
            self._cascade_to_vendor_orders(order, st.SHIPPED)
            self.store.flush()
            self._notify_customer(order, st.SHIPPED, vendors=True)
            logger.info("order shipped: order_id=%s carrier=%s actor_id=%s", order.id, cmd.carrier, actor.id)
            return order

        self._advance_vendor_order(
            order,
            actor,
            actor.id,
            VendorStatusCommand(
                status=st.SHIPPED,
                notes=cmd.notes,
                tracking_number=cmd.tracking_number,
                tracking_url=cmd.tracking_url,
                carrier=cmd.carrier,
            ),
        )
        return order

    def mark_delivered(self, actor: Actor, order_id: str, cmd: DeliverOrderCommand) -> OrderModel:
        order = self.store.get(order_id)
        self._ensure_can_fulfill(order, actor)
        if actor.is_admin or is_sole_vendor(order, actor):
            self._transition(order, st.DELIVERED, actor.id, cmd.notes or "Order delivered", cmd.location)
            self._cascade_to_vendor_orders(order, st.DELIVERED)
            self.store.flush()
            self._notify_customer(order, st.DELIVERED, vendors=True)
            logger.info("order delivered: order_id=%s actor_id=%s", order.id, actor.id)
            return order

        self._advance_vendor_order(order, actor, actor.id, VendorStatusCommand(status=st.DELIVERED, notes=cmd.notes))
        return order

    # -- vendor sub-orders -----------------------------------------------------

    def update_vendor_order_status(self, actor: Actor, order_id: str, cmd: VendorStatusCommand) -> OrderModel:
        order = self.store.get(order_id)
        if not actor.can(Capability.FULFILL_ORDERS):
            raise NotAuthorized("not authorized to fulfil orders", code="NOT_AUTHORIZED")
        if actor.is_admin:
            if not cmd.vendor_id:
                raise ValidationFailed("vendor_id is required when an admin updates a vendor order")
            vendor_id = cmd.vendor_id
        else:
            if not is_vendor_on(order, actor):
                raise NotAuthorized("not authorized to update this order", code="NOT_AUTHORIZED")
            vendor_id = actor.id
        self._advance_vendor_order(order, actor, vendor_id, cmd)
        return order

    def _advance_vendor_order(self, order: OrderModel, actor: Actor, vendor_id: str, cmd: VendorStatusCommand) -> None:
        vendor_order = order.vendor_orders.get(vendor_id)
        if vendor_order is None:
            raise VendorOrderNotFound(f"vendor {vendor_id} has no sub-order on order {order.id}")

        allowed_main = st.FULFILLABLE_STATUSES
        if cmd.status in (st.PROCESSING, st.READY):
            allowed_main = allowed_main | {st.PAYMENT_CONFIRMED}
        if order.status not in allowed_main:
            raise OrderNotFulfillable(f"order {order.order_number} is {order.status}; vendor order cannot move to {cmd.status}")
        if not st.vendor_can_advance(vendor_order.status, cmd.status):
            raise InvalidStatusTransition(vendor_order.status, cmd.status)

        now = now_utc()
        vendor_order.status = cmd.status
        if cmd.notes:
            vendor_order.notes = cmd.notes
        if cmd.tracking_number or cmd.tracking_url or cmd.carrier:
            vendor_order.tracking = {
                "carrier": cmd.carrier,
                "tracking_number": cmd.tracking_number,
                "tracking_url": cmd.tracking_url,
            }
        if cmd.status in (st.SHIPPED, st.DELIVERED) and vendor_order.shipped_at is None:
            vendor_order.shipped_at = now
        if cmd.status == st.DELIVERED:
            vendor_order.delivered_at = now
        if cmd.status in (st.SHIPPED, st.DELIVERED):
            for item in order.items:
                if item.vendor_id == vendor_id:
                    item.status = cmd.status
        # Touch the order row so its version guards the sibling sub-orders the
        # derivation below reads.
        order.updated_at = now
        self.store.flush()
        logger.info(
            "vendor order updated: order_id=%s vendor_id=%s status=%s actor_id=%s",
            order.id,
            vendor_id,
            cmd.status,
            actor.id,
        )
        main_before = order.status
        self._derive_main_status(order)
        if order.status == main_before:
            self.outbox.extend(
                order_notifications(
                    "vendor_status_updated",
                    order.id,
                    order.order_number,
                    order.user_id,
                    [],
                    status=cmd.status,
                )
            )

    def _derive_main_status(self, order: OrderModel) -> None:
        vendor_statuses = [vo.status for vo in order.vendor_orders.values()]
        while True:
            target = st.derive_main_status(order.status, vendor_statuses)
            if target is None:
                break
            note = "All vendor orders delivered" if target == st.DELIVERED else "All vendor orders shipped"
            self._transition(order, target, None, note)
            self._notify_customer(order, target)
            logger.info("order status derived: order_id=%s status=%s", order.id, target)
        if all(s == st.DELIVERED for s in vendor_statuses) and order.status != st.DELIVERED:
            logger.warning(
                "derived transition skipped: order_id=%s status=%s target=%s",
                order.id,
                order.status,
                st.DELIVERED,
            )
        self.store.flush()

    # -- returns and refunds ---------------------------------------------------

    def request_return(self, actor: Actor, order_id: str, cmd: ReturnRequestCommand) -> ReturnOutcome:
        order = self.store.get(order_id)
        if not (is_owner(order, actor) or actor.is_admin):
            raise NotAuthorized("not authorized to return this order", code="NOT_AUTHORIZED")
        if not st.can_be_returned(order.status, order.delivered_at, self.settings.return_window_days):
            raise OrderCannotBeReturned(f"order {order.order_number} cannot be returned")

        # Remaining returnable quantity per order line, keyed by line position.
        remaining: dict[int, int] = {item.position: item.quantity for item in order.items}
        for ret in order.returns.values():
            if ret.status == st.RETURN_REJECTED:
                continue
            for entry in ret.items:
                remaining[int(entry["line"])] -= int(entry["quantity"])

        lines = {item.position: item for item in order.items}
        allocated: list[dict] = []
        for entry in cmd.items:
            candidates = [item for item in order.items if item.product_id == entry.product_id]
            if not candidates:
                raise ValidationFailed(f"product {entry.product_id} is not part of this order")
            if entry.line is not None:
                line_item = lines.get(entry.line)
                if line_item is None or line_item.product_id != entry.product_id:
                    raise ValidationFailed(f"line {entry.line} does not hold product {entry.product_id}")
                candidates = [line_item]
            if entry.quantity > sum(remaining[item.position] for item in candidates):
                ordered = sum(item.quantity for item in candidates)
                raise ReturnQuantityExceeded(
                    f"return quantity for product {entry.product_id} exceeds ordered quantity {ordered}"
                )
            # Fill lines in order; each stored entry carries its own line's price.
            left = entry.quantity
            for item in candidates:
                take = min(left, remaining[item.position])
                if take <= 0:
                    continue
                remaining[item.position] -= take
                left -= take
                allocated.append(
                    {
                        "product_id": item.product_id,
                        "line": item.position,
                        "quantity": take,
                        "reason": entry.reason,
                        "unit_price": str(item.unit_price),
                    }
                )
                if not left:
                    break

        now = now_utc()
        ret = ReturnRequestModel(
            id=str(uuid4()),
            seq_id=len(order.returns) + 1,
            requested_by=actor.id,
            items=allocated,
            reason=cmd.reason,
            description=cmd.description,
            status=st.RETURN_REQUESTED,
            requested_at=now,
        )
        order.returns[ret.id] = ret
        order.updated_at = now
        self.store.flush()

        vendor_ids = sorted({lines[e["line"]].vendor_id for e in allocated})
        self.outbox.extend(order_notifications("return_requested", order.id, order.order_number, None, vendor_ids))
        logger.info("return requested: order_id=%s return_id=%s actor_id=%s", order.id, ret.id, actor.id)
        return ReturnOutcome(order, ret)

    def process_return(self, actor: Actor, order_id: str, return_id: str, cmd: ProcessReturnCommand) -> ReturnOutcome:
        order = self.store.get(order_id)
        if not actor.can(Capability.PROCESS_RETURNS) or not (actor.is_admin or is_vendor_on(order, actor)):
            raise NotAuthorized("not authorized to process returns for this order", code="NOT_AUTHORIZED")
        ret = order.returns.get(return_id)
        if ret is None:
            raise ReturnRequestNotFound(f"return request {return_id} not found")

        target = st.RETURN_ACTIONS[cmd.action]
        st.assert_return_transition(ret.status, target)
        now = now_utc()

        refund: RefundOutcome | None = None
        if target == st.RETURN_REFUNDED:
            amount = refund_amount_for((Decimal(e["unit_price"]), int(e["quantity"])) for e in ret.items)
            refund = self._refund(order, amount, f"Return {ret.id}: {ret.reason}", actor.id, return_id=ret.id)
            if not refund.ok:
                return ReturnOutcome(order, ret, refund)
            ret.refund_amount = amount
            ret.refunded_at = now
            self._settle_refund_status(order, actor.id, f"Return {ret.id} refunded: {amount}")
        elif target == st.RETURN_APPROVED:
            ret.approved_at = now
        elif target == st.RETURN_REJECTED:
            ret.rejected_at = now
        elif target == st.RETURN_RECEIVED:
            ret.received_at = now
            for entry in ret.items:
                self.inventory.restore(entry["product_id"], int(entry["quantity"]))

        ret.status = target
        if cmd.notes:
            ret.processed_notes = cmd.notes
        order.updated_at = now
        self.store.flush()

        self.outbox.extend(
            order_notifications(
                "return_updated", order.id, order.order_number, order.user_id, [], status=target
            )
        )
        logger.info(
            "return processed: order_id=%s return_id=%s status=%s actor_id=%s", order.id, ret.id, target, actor.id
        )
        return ReturnOutcome(order, ret, refund)

    def refund(self, actor: Actor, order_id: str, cmd: RefundCommand) -> RefundOutcome:
        if not actor.is_admin:
            raise NotAuthorized("only admins may issue manual refunds", code="NOT_AUTHORIZED")
        order = self.store.get(order_id)
        outcome = self._refund(order, cmd.amount, cmd.reason, actor.id)
        if outcome.ok:
            self._settle_refund_status(order, actor.id, f"Refund of {outcome.refund.amount} issued: {cmd.reason}")
        return outcome

    def _settle_refund_status(self, order: OrderModel, actor_id: str | None, notes: str) -> None:
        """Move a delivered order to the refund status its payment now carries."""
        target = st.REFUND_STATUS_FOR_PAYMENT.get(order.payment_status)
        if target is None or target == order.status:
            return
        if not st.can_transition(order.status, target, include_system=True):
            return
        self._transition(order, target, actor_id, notes, system=True)
        self._notify_customer(order, target)
        self.store.flush()
        logger.info("order status settled by refund: order_id=%s status=%s", order.id, target)

    def _refund(
        self,
        order: OrderModel,
        amount: Decimal | None,
        reason: str,
        actor_id: str | None,
        return_id: str | None = None,
    ) -> RefundOutcome:
        payment = self.store.active_payment(order.id)
        if payment is None:
            raise PaymentNotCompleted(f"order {order.order_number} has no completed payment to refund")
        remaining = to_cents(payment.amount - payment.refunded_amount)
        amount = to_cents(amount) if amount is not None else remaining
        if amount <= ZERO or amount > remaining:
            raise RefundExceedsPayment(f"refund {amount} exceeds refundable amount {remaining}")

        result = self.gateway.refund(payment.transaction_ref, amount, reason)
        now = now_utc()
        refund = RefundModel(
            order_id=order.id,
            payment_id=payment.id,
            return_id=return_id,
            amount=amount,
            reason=reason,
            processed_by=actor_id,
            status="succeeded" if result.ok else "failed",
            gateway_ref=result.reference,
            error=result.error,
            created_at=now,
        )
        self.store.add_record(refund)
        if not result.ok:
            logger.warning("refund failed: order_id=%s amount=%s error=%s", order.id, amount, result.error)
            return RefundOutcome(refund, result)

        payment.refunded_amount = to_cents(payment.refunded_amount + amount)
        payment.status = "refunded" if payment.refunded_amount >= payment.amount else "partially_refunded"
        payment.updated_at = now
        order.payment_status = payment.status
        order.updated_at = now
        self.store.flush()
        logger.info(
            "refund issued: order_id=%s amount=%s gateway_ref=%s payment_status=%s",
            order.id,
            amount,
            result.reference,
            payment.status,
        )
        return RefundOutcome(refund, result)

    # -- notes and messages ----------------------------------------------------

    def add_note(self, actor: Actor, order_id: str, cmd: AddNoteCommand) -> OrderModel:
        if not actor.can(Capability.WRITE_INTERNAL_NOTES):
            raise NotAuthorized("only admins may annotate orders", code="NOT_AUTHORIZED")
        order = self.store.get(order_id)
        order.notes = {**(order.notes or {}), cmd.type: cmd.note}
        order.updated_at = now_utc()
        self.store.flush()
        logger.info("order note set: order_id=%s type=%s actor_id=%s", order.id, cmd.type, actor.id)
        return order

    def send_message(self, actor: Actor, order_id: str, cmd: SendMessageCommand) -> OrderModel:
        order = self.store.get(order_id)
        customer, vendor, admin = is_owner(order, actor), is_vendor_on(order, actor), actor.is_admin
        if not (customer or vendor or admin):
            raise NotAuthorized("not authorized to send messages for this order", code="NOT_AUTHORIZED")

        if cmd.type == "customer" and (vendor or admin):
            field, recipients = "vendor", [order.user_id]
        elif cmd.type == "vendor" and (customer or admin):
            field, recipients = "customer", list(order.vendor_orders)
        elif cmd.type == "internal" and admin:
            field, recipients = "internal", []
        else:
            raise NotAuthorized(f"not allowed to send a {cmd.type} message on this order", code="NOT_AUTHORIZED")

        order.notes = {**(order.notes or {}), field: cmd.message}
        order.updated_at = now_utc()
        self.store.flush()
        for recipient_id in recipients:
            self.outbox.add(
                Notification(
                    recipient_id=recipient_id,
                    event="message",
                    title="New Order Message",
                    message=f"New message regarding order {order.order_number}",
                    category="informational",
                    data={"order_id": order.id, "order_number": order.order_number, "message": cmd.message},
                    action_url=f"/orders/{order.id}",
                )
            )
        logger.info("order message sent: order_id=%s from=%s type=%s", order.id, actor.id, cmd.type)
        return order

    def soft_delete(self, actor: Actor, order_id: str) -> None:
        if not actor.is_admin:
            raise NotAuthorized("only admins may delete orders", code="NOT_AUTHORIZED")
        order = self.store.get(order_id)
        self.store.soft_delete(order)
        logger.info("order soft-deleted: order_id=%s actor_id=%s", order.id, actor.id)

    def overdue_cutoff(self) -> datetime:
        return now_utc() - timedelta(days=self.settings.overdue_after_days)

    # -- internals -------------------------------------------------------------

    def _cancel(self, order: OrderModel, actor: Actor, reason: str | None) -> CancelResult:
        if not st.can_be_cancelled(order.status):
            raise OrderCannotBeCancelled(f"order {order.order_number} cannot be cancelled in status {order.status}")
        had_payment = order.payment_status in ("completed", "partially_refunded")

        self._transition(order, st.CANCELLED, actor.id, reason or "Order cancelled")
        self._cascade_to_vendor_orders(order, st.CANCELLED)
        for item in order.items:
            self.inventory.restore(item.product_id, item.quantity)
        self.store.flush()

        refund = None
        if had_payment:
            refund = self._refund(order, None, reason or "Order cancelled", actor.id)

        self._notify_customer(order, st.CANCELLED, vendors=True)
        logger.info(
            "order cancelled: order_id=%s actor_id=%s refund=%s",
            order.id,
            actor.id,
            refund.refund.status if refund else None,
        )
        return CancelResult(order, refund)

    def _transition(
        self,
        order: OrderModel,
        target: str,
        actor_id: str | None,
        notes: str | None = None,
        location: str | None = None,
        system: bool = False,
        at: datetime | None = None,
    ) -> None:
        st.assert_transition(order.status, target, include_system=system)
        at = at or now_utc()
        order.status = target
        order.updated_at = at
        stamp = _TIMESTAMP_ON_STATUS.get(target)
        if stamp:
            setattr(order, stamp, at)
        item_status = st.ITEM_STATUS_ON_TRANSITION.get(target)
        if item_status:
            for item in order.items:
                if item.status != st.DELIVERED or item_status == st.DELIVERED:
                    item.status = item_status
        self.store.append_history(order, target, actor_id, notes, location, at=at)

    def _cascade_to_vendor_orders(self, order: OrderModel, target: str) -> None:
        now = now_utc()
        for vendor_order in order.vendor_orders.values():
            if target == st.CANCELLED:
                if vendor_order.status not in (st.DELIVERED, st.CANCELLED):
                    vendor_order.status = st.CANCELLED
            elif target in (st.SHIPPED, st.DELIVERED) and st.vendor_can_advance(vendor_order.status, target):
                vendor_order.status = target
                if vendor_order.shipped_at is None:
                    vendor_order.shipped_at = now
                if target == st.DELIVERED:
                    vendor_order.delivered_at = now

    def _set_tracking(self, order: OrderModel, carrier: str | None, number: str | None, url: str | None) -> None:
        shipping = dict(order.shipping or {})
        shipping.update(
            {
                "carrier": carrier or shipping.get("carrier"),
                "tracking_number": number or shipping.get("tracking_number"),
                "tracking_url": url or shipping.get("tracking_url"),
                "shipped_at": shipping.get("shipped_at") or isoformat_z(now_utc()),
            }
        )
        order.shipping = shipping

    def _ensure_can_view(self, order: OrderModel, actor: Actor) -> None:
        if not can_view(order, actor):
            raise NotAuthorized("not authorized to view this order", code="NOT_AUTHORIZED")

    def _ensure_can_manage_status(self, order: OrderModel, actor: Actor) -> None:
        if not actor.can(Capability.MANAGE_ORDER_STATUS):
            raise NotAuthorized("not authorized to update order status", code="NOT_AUTHORIZED")
        if actor.is_vendor and not is_sole_vendor(order, actor):
            raise NotAuthorized(
                "vendors may change the order status only on orders where they are the sole vendor",
                code="NOT_AUTHORIZED",
            )

    def _ensure_can_fulfill(self, order: OrderModel, actor: Actor) -> None:
        if not actor.can(Capability.FULFILL_ORDERS) or not (actor.is_admin or is_vendor_on(order, actor)):
            raise NotAuthorized("not authorized to fulfil this order", code="NOT_AUTHORIZED")

    def _notify_customer(self, order: OrderModel, event: str, vendors: bool = False) -> None:
        self.outbox.extend(
            order_notifications(
                event,
                order.id,
                order.order_number,
                order.user_id,
                list(order.vendor_orders) if vendors else [],
                item_count=len(order.items),
                status=order.status,
            )
        )

    @staticmethod
    def _requires_payment(order: OrderModel) -> bool:
        return order.total_amount > ZERO and order.payment_status in ("pending", "failed")
