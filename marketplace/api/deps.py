from __future__ import annotations

from typing import Any

from fastapi import BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.domain.orders.lifecycle import OrderLifecycleController, RefundOutcome
from marketplace.integrations.coupons import CouponService
from marketplace.integrations.notifications import (
    NotificationDispatcher,
    NotificationOutbox,
    build_notification_dispatcher,
    deliver,
)
from marketplace.integrations.payments import GatewayResult, PaymentGateway, build_payment_gateway
from marketplace.persistence.pg import get_session


def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        gateway = build_payment_gateway()
        request.app.state.payment_gateway = gateway
    return gateway


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "notification_dispatcher", None)
    if dispatcher is None:
        dispatcher = build_notification_dispatcher()
        request.app.state.notification_dispatcher = dispatcher
    return dispatcher


def get_controller(
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> OrderLifecycleController:
    settings = get_settings()
    return OrderLifecycleController(
        session,
        gateway,
        outbox=NotificationOutbox(),
        coupons=CouponService(settings=settings),
        settings=settings,
    )


def commit_and_notify(
    controller: OrderLifecycleController,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
) -> None:
    """Commit the request's writes, then queue its notifications for delivery."""
    controller.session.commit()
    notifications = controller.outbox.drain()
    if notifications:
        background_tasks.add_task(deliver, dispatcher, notifications)


def gateway_failure_response(
    result: GatewayResult,
    declined_code: str,
    body: dict[str, Any] | None = None,
) -> JSONResponse:
    if result.unavailable:
        content = {"detail": result.error or "payment gateway unavailable", "error": "PAYMENT_GATEWAY_UNAVAILABLE"}
        status_code = 503
    else:
        content = {"detail": result.error or "payment gateway declined the request", "error": declined_code}
        status_code = 400
    content.update(body or {})
    return JSONResponse(status_code=status_code, content=content)


def refund_to_dict(outcome: RefundOutcome | None) -> dict[str, Any] | None:
    if outcome is None:
        return None
    refund = outcome.refund
    return {
        "id": refund.id,
        "amount": f"{refund.amount:.2f}",
        "status": refund.status,
        "gateway_ref": refund.gateway_ref,
        "error": refund.error,
    }
