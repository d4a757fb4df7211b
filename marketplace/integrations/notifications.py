from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx

from marketplace.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    recipient_id: str
    event: str
    title: str
    message: str
    priority: str = "normal"
    category: str = "transactional"
    data: dict[str, Any] = field(default_factory=dict)
    action_url: str | None = None


class NotificationDispatcher(Protocol):
    backend_name: str

    def send(self, notification: Notification) -> None:
        ...


class LogNotificationDispatcher:
    backend_name = "log"

    def send(self, notification: Notification) -> None:
        logger.info(
            "notification: recipient=%s event=%s title=%s",
            notification.recipient_id,
            notification.event,
            notification.title,
        )


class MemoryNotificationDispatcher:
    backend_name = "memory"

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def for_recipient(self, recipient_id: str) -> list[Notification]:
        return [n for n in self.sent if n.recipient_id == recipient_id]


class WebhookNotificationDispatcher:
    backend_name = "webhook"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.url = self.settings.notification_webhook_url
        self.timeout = max(1, self.settings.notification_timeout_seconds)

    def _request(self, json_body: dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json=json_body)
        response.raise_for_status()

    def send(self, notification: Notification) -> None:
        self._request(asdict(notification))


def build_notification_dispatcher(settings: Settings | None = None) -> NotificationDispatcher:
    cfg = settings or get_settings()
    if cfg.notification_backend == "webhook":
        return WebhookNotificationDispatcher(cfg)
    if cfg.notification_backend == "memory":
        return MemoryNotificationDispatcher()
    return LogNotificationDispatcher()


class NotificationOutbox:
    """Notifications collected during a request and delivered after commit."""

    def __init__(self) -> None:
        self.pending: list[Notification] = []

    def add(self, notification: Notification) -> None:
        self.pending.append(notification)

    def extend(self, notifications: list[Notification]) -> None:
        self.pending.extend(notifications)

    def clear(self) -> None:
        self.pending.clear()

    def drain(self) -> list[Notification]:
        items, self.pending = self.pending, []
        return items


def deliver(dispatcher: NotificationDispatcher, notifications: list[Notification]) -> int:
    """Send each notification; failures are logged and never propagate."""
    delivered = 0
    for notification in notifications:
        try:
            dispatcher.send(notification)
            delivered += 1
        except Exception as exc:
            logger.warning(
                "notification delivery failed: backend=%s recipient=%s event=%s error=%s",
                dispatcher.backend_name,
                notification.recipient_id,
                notification.event,
                exc,
            )
    return delivered


_TITLES: dict[str, dict[str, str]] = {
    "created": {"customer": "Order Confirmed", "vendor": "New Order Received"},
    "payment_confirmed": {"customer": "Payment Confirmed", "vendor": "Payment Received"},
    "payment_failed": {"customer": "Payment Failed"},
    "shipped": {"customer": "Order Shipped", "vendor": "Order Fulfilled"},
    "delivered": {"customer": "Order Delivered", "vendor": "Order Completed"},
    "cancelled": {"customer": "Order Cancelled", "vendor": "Order Cancelled"},
    "return_requested": {"vendor": "Return Requested"},
    "return_updated": {"customer": "Return Request Updated"},
    "vendor_status_updated": {"customer": "Order Update"},
    "refunded": {"customer": "Order Refunded"},
    "partially_refunded": {"customer": "Order Partially Refunded"},
    "message": {"customer": "New Order Message", "vendor": "New Order Message"},
}

_PRIORITIES = {"cancelled": "high", "payment_failed": "high", "return_requested": "high"}


def title_for(event: str, audience: str) -> str:
    return _TITLES.get(event, {}).get(audience, "Order Update")


def message_for(event: str, audience: str, order_number: str, item_count: int = 0, status: str | None = None) -> str:
    messages = {
        ("created", "customer"): f"Your order {order_number} has been confirmed and is being processed.",
        ("created", "vendor"): f"You have received a new order {order_number} for {item_count} items.",
        ("payment_confirmed", "customer"): "Payment for your order has been confirmed.",
        ("payment_confirmed", "vendor"): "Payment for order has been received.",
        ("payment_failed", "customer"): f"Payment for order {order_number} failed. You can retry or cancel.",
        ("shipped", "customer"): f"Your order {order_number} has been shipped! Track your package.",
        ("shipped", "vendor"): "Order has been fulfilled and shipped.",
        ("delivered", "customer"): f"Your order {order_number} has been delivered.",
        ("cancelled", "customer"): f"Your order {order_number} has been cancelled.",
        ("cancelled", "vendor"): f"Order {order_number} has been cancelled.",
        ("return_requested", "vendor"): f"A return was requested for order {order_number}.",
        ("return_updated", "customer"): f"Your return for order {order_number} is now {status}.",
        ("vendor_status_updated", "customer"): f"Part of your order {order_number} is now {status}.",
    }
    if (event, audience) in messages:
        return messages[(event, audience)]
    if status:
        return f"Your order {order_number} is now {status}."
    return "Your order has been updated."


def order_notifications(
    event: str,
    order_id: str,
    order_number: str,
    customer_id: str | None,
    vendor_ids: list[str],
    item_count: int = 0,
    amount: str | None = None,
    status: str | None = None,
) -> list[Notification]:
    """Customer and per-vendor notifications for one order event.

    Pass ``customer_id=None`` or an empty ``vendor_ids`` to skip an audience.
    """
    notifications: list[Notification] = []
    if customer_id:
        data: dict[str, Any] = {"order_id": order_id, "order_number": order_number}
        if amount is not None:
            data["amount"] = amount
        notifications.append(
            Notification(
                recipient_id=customer_id,
                event=event,
                title=title_for(event, "customer"),
                message=message_for(event, "customer", order_number, item_count, status),
                priority=_PRIORITIES.get(event, "normal"),
                data=data,
                action_url=f"/orders/{order_id}",
            )
        )
    for vendor_id in vendor_ids:
        notifications.append(
            Notification(
                recipient_id=vendor_id,
                event=event,
                title=title_for(event, "vendor"),
                message=message_for(event, "vendor", order_number, item_count, status),
                priority="normal",
                data={"order_id": order_id, "order_number": order_number},
                action_url=f"/vendor/orders/{order_id}",
            )
        )
    return notifications
