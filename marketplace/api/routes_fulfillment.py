from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends

from marketplace.api.deps import (
    commit_and_notify,
    gateway_failure_response,
    get_controller,
    get_notification_dispatcher,
    refund_to_dict,
)
from marketplace.core.security import Actor, get_actor
from marketplace.domain.orders import projections
from marketplace.domain.orders.commands import (
    DeliverOrderCommand,
    ProcessReturnCommand,
    ReturnRequestCommand,
    ShipOrderCommand,
    VendorStatusCommand,
)
from marketplace.domain.orders.lifecycle import OrderLifecycleController
from marketplace.integrations.notifications import NotificationDispatcher

router = APIRouter(tags=["fulfillment"])


@router.post("/orders/{order_id}/ship")
def ship_order(
    order_id: str,
    cmd: ShipOrderCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    order = controller.mark_shipped(actor, order_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    return {"order": projections.order_to_dict(order, actor)}


@router.post("/orders/{order_id}/deliver")
def deliver_order(
    order_id: str,
    background_tasks: BackgroundTasks,
    cmd: DeliverOrderCommand | None = None,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    order = controller.mark_delivered(actor, order_id, cmd or DeliverOrderCommand())
    commit_and_notify(controller, background_tasks, dispatcher)
    return {"order": projections.order_to_dict(order, actor)}


@router.put("/orders/vendor/{order_id}/status")
def update_vendor_order_status(
    order_id: str,
    cmd: VendorStatusCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    order = controller.update_vendor_order_status(actor, order_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    return {"order": projections.order_to_dict(order, actor)}


@router.post("/orders/{order_id}/return", status_code=201)
def request_return(
    order_id: str,
    cmd: ReturnRequestCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    outcome = controller.request_return(actor, order_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    return {"order_id": outcome.order.id, "return_request": projections.return_to_dict(outcome.return_request)}


@router.put("/orders/{order_id}/return/{return_id}")
def process_return(
    order_id: str,
    return_id: str,
    cmd: ProcessReturnCommand,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    controller: OrderLifecycleController = Depends(get_controller),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    outcome = controller.process_return(actor, order_id, return_id, cmd)
    commit_and_notify(controller, background_tasks, dispatcher)
    if outcome.refund is not None and not outcome.refund.ok:
        return gateway_failure_response(
            outcome.refund.result,
            "REFUND_FAILED",
            {
                "return_request": projections.return_to_dict(outcome.return_request),
                "refund": refund_to_dict(outcome.refund),
            },
        )
    return {
        "order_id": outcome.order.id,
        "return_request": projections.return_to_dict(outcome.return_request),
        "refund": refund_to_dict(outcome.refund),
        "payment_status": outcome.order.payment_status,
    }
