"""Order, vendor sub-order and return request state machines.

The main order table is the authoritative one: every explicit status change
goes through :func:`assert_transition`. ``payment_failed`` is entered only by
the payment confirmation path (see ``SYSTEM_TRANSITIONS``) and is recoverable.
A delivered order reaches the refund statuses the same way, when a refund
settles against its payment.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

from marketplace.core.errors import InvalidReturnTransition, InvalidStatusTransition

PENDING = "pending"
PAYMENT_FAILED = "payment_failed"
PAYMENT_CONFIRMED = "payment_confirmed"
PROCESSING = "processing"
READY = "ready"
SHIPPED = "shipped"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERED = "delivered"
COMPLETED = "completed"
CANCELLED = "cancelled"
REFUNDED = "refunded"
PARTIALLY_REFUNDED = "partially_refunded"

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PAYMENT_CONFIRMED, CANCELLED}),
    PAYMENT_FAILED: frozenset({PAYMENT_CONFIRMED, CANCELLED}),
    PAYMENT_CONFIRMED: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({READY, SHIPPED, CANCELLED}),
    READY: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({OUT_FOR_DELIVERY, DELIVERED, CANCELLED}),
    OUT_FOR_DELIVERY: frozenset({DELIVERED, CANCELLED}),
    DELIVERED: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
    PARTIALLY_REFUNDED: frozenset({REFUNDED}),
}

# Edges only the payment paths may take: a gateway decline, and a refund
# settling against a delivered order.
SYSTEM_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PAYMENT_FAILED}),
    DELIVERED: frozenset({PARTIALLY_REFUNDED, REFUNDED}),
}

ORDER_STATUSES: tuple[str, ...] = tuple(ORDER_TRANSITIONS)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, REFUNDED})
CANCELLABLE_STATUSES = frozenset(
    {PENDING, PAYMENT_FAILED, PAYMENT_CONFIRMED, PROCESSING, READY, SHIPPED, OUT_FOR_DELIVERY}
)
RETURNABLE_STATUSES = frozenset({DELIVERED, COMPLETED, PARTIALLY_REFUNDED})
PAYABLE_STATUSES = frozenset({PENDING, PAYMENT_FAILED})
FULFILLABLE_STATUSES = frozenset({PROCESSING, READY, SHIPPED, OUT_FOR_DELIVERY})
PENDING_QUEUE_STATUSES = frozenset({PENDING, PROCESSING, READY})
FINAL_STATUSES = frozenset({DELIVERED, COMPLETED, CANCELLED, REFUNDED, PARTIALLY_REFUNDED})

# Order status a settled refund implies, keyed by the payment status it leaves.
REFUND_STATUS_FOR_PAYMENT = {"refunded": REFUNDED, "partially_refunded": PARTIALLY_REFUNDED}

# Line items follow the main order on these transitions.
ITEM_STATUS_ON_TRANSITION = {SHIPPED: "shipped", DELIVERED: "delivered", CANCELLED: "cancelled"}


def allowed_targets(current: str, include_system: bool = False) -> frozenset[str]:
    targets = ORDER_TRANSITIONS.get(current, frozenset())
    if include_system:
        targets = targets | SYSTEM_TRANSITIONS.get(current, frozenset())
    return targets


def can_transition(current: str, target: str, include_system: bool = False) -> bool:
    return target in allowed_targets(current, include_system=include_system)


def assert_transition(current: str, target: str, include_system: bool = False) -> None:
    if not can_transition(current, target, include_system=include_system):
        raise InvalidStatusTransition(current, target)


def can_be_cancelled(status: str) -> bool:
    return status in CANCELLABLE_STATUSES


def can_be_returned(
    status: str,
    delivered_at: datetime | None,
    return_window_days: int,
    now: datetime | None = None,
) -> bool:
    if status not in RETURNABLE_STATUSES or delivered_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if delivered_at.tzinfo is None:
        delivered_at = delivered_at.replace(tzinfo=timezone.utc)
    return now - delivered_at <= timedelta(days=return_window_days)


# Vendor sub-orders: forward only. ``cancelled`` is reached by cascade from the
# main order, never by a vendor write.
VENDOR_PENDING = "pending"
VENDOR_SEQUENCE: tuple[str, ...] = (VENDOR_PENDING, PROCESSING, READY, SHIPPED, DELIVERED)
VENDOR_STATUSES: tuple[str, ...] = VENDOR_SEQUENCE + (CANCELLED,)
VENDOR_WRITABLE_STATUSES = frozenset({PROCESSING, READY, SHIPPED, DELIVERED})


def vendor_can_advance(current: str, target: str) -> bool:
    if current == CANCELLED or target not in VENDOR_SEQUENCE or current not in VENDOR_SEQUENCE:
        return False
    return VENDOR_SEQUENCE.index(target) > VENDOR_SEQUENCE.index(current)


def vendor_rank(status: str) -> int:
    return VENDOR_SEQUENCE.index(status) if status in VENDOR_SEQUENCE else -1


def derive_main_status(current: str, vendor_statuses: Iterable[str]) -> str | None:
    """Next main status implied by the vendor sub-orders, or None.

    All delivered -> delivered, when the table allows it from ``current``.
    All shipped or delivered while the main order is ``ready`` -> shipped.
    Apply repeatedly: ``ready`` with every vendor delivered steps through
    ``shipped`` first.
    """
    statuses = list(vendor_statuses)
    if not statuses:
        return None
    if all(s == DELIVERED for s in statuses) and can_transition(current, DELIVERED):
        return DELIVERED
    if current == READY and all(s in (SHIPPED, DELIVERED) for s in statuses):
        return SHIPPED
    return None


RETURN_REQUESTED = "requested"
RETURN_APPROVED = "approved"
RETURN_REJECTED = "rejected"
RETURN_RECEIVED = "received"
RETURN_REFUNDED = "refunded"

RETURN_TRANSITIONS: dict[str, frozenset[str]] = {
    RETURN_REQUESTED: frozenset({RETURN_APPROVED, RETURN_REJECTED}),
    RETURN_APPROVED: frozenset({RETURN_RECEIVED}),
    RETURN_RECEIVED: frozenset({RETURN_REFUNDED}),
    RETURN_REJECTED: frozenset(),
    RETURN_REFUNDED: frozenset(),
}

RETURN_ACTIONS: dict[str, str] = {
    "approve": RETURN_APPROVED,
    "reject": RETURN_REJECTED,
    "mark_received": RETURN_RECEIVED,
    "refund": RETURN_REFUNDED,
}


def assert_return_transition(current: str, target: str) -> None:
    if target not in RETURN_TRANSITIONS.get(current, frozenset()):
        raise InvalidReturnTransition(f"return request cannot move from {current} to {target}")
