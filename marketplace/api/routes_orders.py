from __future__ import annotations

from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Response

from marketplace.api.deps import (
    commit_and_notify,
    gateway_failure_response,
    get_controller,
    get_notification_dispatcher,
    refund_to_dict,
)
from marketplace.api.utils import parse_date_range
from marketplace.core.errors import NotAuthorized
from marketplace.core.security import Actor, Capability, get_actor
from marketplace.domain.orders import projections
from marketplace.domain.orders.commands import (
    AddNoteCommand,
    BulkStatusCommand,
    CancelOrderCommand,
    ConfirmPaymentCommand,
    CreateOrderCommand,
    RefundCommand,
    SendMessageCommand,
    UpdateStatusCommand,
)
from marketplace.domain.orders.lifecycle import OrderLifecycleController
from marketplace.domain.orders.store import OrderQuery, Page
from marketplace.integrations.notifications import NotificationDispatcher

router = APIRouter(tags=["orders"])

SortBy = Literal["date", "amount"]
SortOrder = Literal["asc", "desc"]


def _require(actor: Actor, capability: Capability, message: str) -> None:
    if not actor.can(capability):
        raise NotAuthorized(message, code="NOT_AUTHORIZED")


def _require_fulfiller(actor: Actor) -> None:
    if not (actor.is_admin or actor.is_vendor):
        raise NotAuthorized("vendor or admin role required", code="NOT_AUTHORIZED")


def _page_body(page: Page, vendor_id: str | None = None) -> dict:
    return {
        "orders": [projections.order_summary(o, vendor_id=vendor_id) for o in page.items],
        "pagination": page.pagination(),
    }


@router.post("/orders", status_code=201)
def create_order(
    cmd: CreateOrderCommand,
    background_tasks: BackgroundTasks,
    response: Response,
    idempotency_key: str | None = Header(default=None, max_length=128),
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    result = controller.create(actor, cmd, idempotency_key=idempotency_key)
    commit_and_notify(controller, background_tasks, dispatcher)
    if result.replayed:
        response.status_code = 200
    return {
        "order": projections.order_to_dict(result.order, actor),
        "requires_payment": result.requires_payment,
        "replayed": result.replayed,
    }


@router.get("/orders")
def list_my_orders(
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: SortBy = Query(default="date"),
    sort_order: SortOrder = Query(default="desc"),
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    query = OrderQuery(status=status, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    return _page_body(controller.store.list_for_customer(actor.id, query))


@router.get("/orders/vendor")
def list_vendor_orders(
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: SortBy = Query(default="date"),
    sort_order: SortOrder = Query(default="desc"),
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    if not actor.is_vendor:
        raise NotAuthorized("vendor role required", code="NOT_AUTHORIZED")
    query = OrderQuery(status=status, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    return _page_body(controller.store.list_for_vendor(actor.id, query), vendor_id=actor.id)


@router.get("/orders/admin")
def list_all_orders(
    status: str | None = Query(default=None),
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: SortBy = Query(default="date"),
    sort_order: SortOrder = Query(default="desc"),
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    _require(actor, Capability.VIEW_ALL_ORDERS, "admin role required")
    start, end = parse_date_range(start_date, end_date)
    query = OrderQuery(
        status=status, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order, start=start, end=end
    )
    return _page_body(controller.store.list_all(query))


@router.put("/orders/admin/bulk")
def bulk_update_status(
    cmd: BulkStatusCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    _require(actor, Capability.VIEW_ALL_ORDERS, "admin role required")
    results = controller.bulk_update_status(actor, cmd.order_ids, cmd.status, cmd.notes)
    commit_and_notify(controller, background_tasks, dispatcher)
    return {
        "updated": sum(1 for r in results if r["ok"]),
        "failed": sum(1 for r in results if not r["ok"]),
        "results": results,
    }


@router.get("/orders/search")
def search_orders(
    q: str | None = Query(default=None, max_length=128),
    status: str | None = Query(default=None),
    min_amount: Decimal | None = Query(default=None, ge=0),
    max_amount: Decimal | None = Query(default=None, ge=0),
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: SortBy = Query(default="date"),
    sort_order: SortOrder = Query(default="desc"),
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    start, end = parse_date_range(start_date, end_date)
    query = OrderQuery(
        status=status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        text=q,
        min_amount=min_amount,
        max_amount=max_amount,
        start=start,
        end=end,
    )
    if actor.can(Capability.VIEW_ALL_ORDERS):
        result = controller.store.search(query)
    elif actor.is_vendor:
        result = controller.store.search(query, vendor_id=actor.id)
    else:
        result = controller.store.search(query, user_id=actor.id)
    return _page_body(result, vendor_id=actor.id if actor.is_vendor else None)


@router.get("/orders/pending")
def pending_orders(
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    _require_fulfiller(actor)
    vendor_id = None if actor.is_admin else actor.id
    orders = controller.store.pending(vendor_id=vendor_id)
    return {"count": len(orders), "orders": [projections.order_summary(o, vendor_id=vendor_id) for o in orders]}


@router.get("/orders/overdue")
def overdue_orders(
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    _require_fulfiller(actor)
    vendor_id = None if actor.is_admin else actor.id
    orders = controller.store.overdue(controller.overdue_cutoff(), vendor_id=vendor_id)
    return {"count": len(orders), "orders": [projections.order_summary(o, vendor_id=vendor_id) for o in orders]}


@router.get("/orders/number/{order_number}")
def get_order_by_number(
    order_number: str,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    order = controller.get_by_number(actor, order_number)
    return {"order": projections.order_to_dict(order, actor)}


@router.get("/orders/track/{order_number}")
def track_order(order_number: str, controller: OrderLifecycleController = Depends(get_controller)):
    order = controller.track(order_number)
    controller.session.commit()
    return {"tracking": projections.tracking_view(order)}


@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    order = controller.get(actor, order_id)
    return {"order": projections.order_to_dict(order, actor)}


@router.get("/orders/{order_id}/timeline")
def get_timeline(
    order_id: str,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    order = controller.get(actor, order_id)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "current_status": order.status,
        "timeline": projections.timeline(order),
    }


@router.get("/orders/{order_id}/invoice")
def get_invoice(
    order_id: str,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    order = controller.get(actor, order_id)
    return {"invoice": projections.invoice(order, controller.store.payments_for(order.id))}


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    background_tasks: BackgroundTasks,
    cmd: CancelOrderCommand | None = None,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    result = controller.cancel(actor, order_id, cmd or CancelOrderCommand())
    commit_and_notify(controller, background_tasks, dispatcher)
    return {
        "order": projections.order_to_dict(result.order, actor),
        "refund_issued": bool(result.refund and result.refund.ok),
        "refund": refund_to_dict(result.refund),
    }


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    cmd: UpdateStatusCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    result = controller.update_status(actor, order_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    return {"order": projections.order_to_dict(result.order, actor), "refund": refund_to_dict(result.refund)}


@router.post("/orders/{order_id}/payment/confirm")
def confirm_payment(
    order_id: str,
    cmd: ConfirmPaymentCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    outcome = controller.confirm_payment(actor, order_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    if not outcome.result.ok:
        return gateway_failure_response(
            outcome.result,
            "PAYMENT_FAILED",
            {"order_status": outcome.order.status, "payment_status": outcome.order.payment_status},
        )
    return {
        "order": projections.order_to_dict(outcome.order, actor),
        "payment": {
            "id": outcome.payment.id,
            "amount": projections.money(outcome.payment.amount),
            "currency": outcome.payment.currency,
            "transaction_ref": outcome.payment.transaction_ref,
            "status": outcome.payment.status,
        },
    }


@router.post("/orders/{order_id}/refund")
def refund_order(
    order_id: str,
    cmd: RefundCommand,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    outcome = controller.refund(actor, order_id, cmd)
    controller.session.commit()
    if not outcome.ok:
        return gateway_failure_response(outcome.result, "REFUND_FAILED", {"refund": refund_to_dict(outcome)})
    order = controller.store.get(order_id)
    return {"refund": refund_to_dict(outcome), "payment_status": order.payment_status}


@router.post("/orders/{order_id}/note")
def add_note(
    order_id: str,
    cmd: AddNoteCommand,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    order = controller.add_note(actor, order_id, cmd)
    return {"order_id": order.id, "notes": order.notes}


@router.post("/orders/{order_id}/message")
def send_message(
    order_id: str,
    cmd: SendMessageCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    controller.send_message(actor, order_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    return {"message": "message sent", "order_id": order_id}


@router.delete("/orders/{order_id}", status_code=204)
def delete_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
):
    controller.soft_delete(actor, order_id)
    return Response(status_code=204)
