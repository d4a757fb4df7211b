from __future__ import annotations

from dataclasses import asdict

from marketplace.core.config import Settings
from marketplace.integrations.notifications import (
    LogNotificationDispatcher,
    MemoryNotificationDispatcher,
    Notification,
    NotificationOutbox,
    WebhookNotificationDispatcher,
    build_notification_dispatcher,
    deliver,
    message_for,
    order_notifications,
)


def test_order_notifications_address_customer_and_each_vendor():
    notes = order_notifications("created", "o-1", "ORD-1", "cust-1", ["v-1", "v-2"], item_count=3, amount="10.00")

    assert [n.recipient_id for n in notes] == ["cust-1", "v-1", "v-2"]
    customer, vendor, _ = notes
    assert customer.title == "Order Confirmed"
    assert customer.data == {"order_id": "o-1", "order_number": "ORD-1", "amount": "10.00"}
    assert customer.action_url == "/orders/o-1"
    assert vendor.title == "New Order Received"
    assert vendor.message == "You have received a new order ORD-1 for 3 items."
    assert vendor.action_url == "/vendor/orders/o-1"


def test_audiences_can_be_skipped():
    assert [n.recipient_id for n in order_notifications("return_requested", "o-1", "ORD-1", None, ["v-1"])] == ["v-1"]
    assert order_notifications("delivered", "o-1", "ORD-1", None, []) == []


def test_priorities_and_fallback_messages():
    cancelled = order_notifications("cancelled", "o-1", "ORD-1", "cust-1", [])[0]
    assert cancelled.priority == "high"
    assert message_for("out_for_delivery", "customer", "ORD-1", status="out_for_delivery") == (
        "Your order ORD-1 is now out_for_delivery."
    )
    assert message_for("unheard_of", "vendor", "ORD-1") == "Your order has been updated."


def test_deliver_keeps_going_after_a_failure():
    class Flaky:
        backend_name = "flaky"

        def __init__(self):
            self.sent = []

        def send(self, notification):
            if notification.recipient_id == "boom":
                raise RuntimeError("webhook down")
            self.sent.append(notification)

    dispatcher = Flaky()
    batch = [
        Notification(recipient_id="boom", event="created", title="t", message="m"),
        Notification(recipient_id="ok", event="created", title="t", message="m"),
    ]
    assert deliver(dispatcher, batch) == 1
    assert [n.recipient_id for n in dispatcher.sent] == ["ok"]


def test_outbox_drains_once():
    outbox = NotificationOutbox()
    outbox.add(Notification(recipient_id="a", event="created", title="t", message="m"))
    outbox.extend(order_notifications("shipped", "o-1", "ORD-1", "b", []))

    assert [n.recipient_id for n in outbox.drain()] == ["a", "b"]
    assert outbox.drain() == []


def test_webhook_dispatcher_posts_the_notification(monkeypatch):
    dispatcher = WebhookNotificationDispatcher(Settings(notification_webhook_url="http://hooks.test/events"))
    posted = []
    monkeypatch.setattr(dispatcher, "_request", posted.append)

    notification = Notification(recipient_id="cust-1", event="shipped", title="Order Shipped", message="m")
    dispatcher.send(notification)
    assert posted == [asdict(notification)]
    assert dispatcher.url == "http://hooks.test/events"


def test_build_notification_dispatcher_follows_settings():
    assert isinstance(build_notification_dispatcher(Settings(notification_backend="log")), LogNotificationDispatcher)
    assert isinstance(build_notification_dispatcher(Settings(notification_backend="memory")), MemoryNotificationDispatcher)
    assert isinstance(
        build_notification_dispatcher(Settings(notification_backend="webhook")), WebhookNotificationDispatcher
    )
