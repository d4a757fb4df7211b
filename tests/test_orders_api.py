from __future__ import annotations

from datetime import datetime, timedelta
from uuid import uuid4

import marketplace.persistence.pg as pg
from marketplace.core.clock import now_utc
from marketplace.persistence.models import OrderModel


def test_express_order_end_to_end(client, delivered_order):
    order = delivered_order["order"]

    assert order["status"] == "delivered"
    assert order["pricing"]["total_amount"] == "78.83"
    assert order["payment_status"] == "completed"
    assert order["shipping"]["carrier"] == "UPS"
    assert order["shipping"]["tracking_number"] == "1Z999"
    assert [h["status"] for h in order["status_history"]] == [
        "pending",
        "payment_confirmed",
        "processing",
        "shipped",
        "delivered",
    ]
    stamps = [datetime.fromisoformat(h["timestamp"].replace("Z", "+00:00")) for h in order["status_history"]]
    assert stamps == sorted(stamps)
    assert [vo["status"] for vo in order["vendor_orders"]] == ["delivered"]
    assert [i["status"] for i in order["items"]] == ["delivered"]
    for field in ("confirmed_at", "shipped_at", "delivered_at"):
        assert order[field] is not None


def test_reads_do_not_change_the_order(client, customer, make_product, place_order):
    _, headers = customer
    product = make_product()
    order_id = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]

    first = client.get(f"/orders/{order_id}", headers=headers).json()
    second = client.get(f"/orders/{order_id}", headers=headers).json()
    assert first == second
    assert first["order"]["version"] == 1


def test_tracking_counts_views_without_bumping_the_version(client, customer, make_product, place_order):
    _, headers = customer
    product = make_product()
    created = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]

    assert client.get(f"/orders/track/{created['order_number']}").status_code == 200
    assert client.get(f"/orders/track/{created['order_number']}").status_code == 200

    with pg.session_scope() as s:
        stored = s.get(OrderModel, created["id"])
        assert stored.view_count == 2
        assert stored.last_viewed_at is not None
        assert stored.version == 1

    missing = client.get("/orders/track/ORD-0-NOPE00")
    assert missing.status_code == 404
    assert missing.json()["error"] == "ORDER_NOT_FOUND"


def test_lookup_by_number_and_unknown_ids(client, customer, make_product, place_order):
    _, headers = customer
    product = make_product()
    created = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]

    by_number = client.get(f"/orders/number/{created['order_number']}", headers=headers)
    assert by_number.status_code == 200
    assert by_number.json()["order"]["id"] == created["id"]

    missing = client.get(f"/orders/{uuid4()}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "ORDER_NOT_FOUND"


def test_invalid_transition_leaves_order_unchanged(client, customer, admin_headers, make_product, place_order):
    _, headers = customer
    product = make_product()
    order_id = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]

    for target in ("shipped", "delivered", "teleported"):
        resp = client.put(f"/orders/{order_id}/status", json={"status": target}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_STATUS_TRANSITION"

    order = client.get(f"/orders/{order_id}", headers=headers).json()["order"]
    assert order["status"] == "pending"
    assert len(order["status_history"]) == 1
    assert order["version"] == 1


def test_status_update_records_location_and_tracking(client, customer, admin_headers, make_product, place_order):
    _, headers = customer
    product = make_product()
    order_id = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]
    client.post(f"/orders/{order_id}/payment/confirm", json={"paymentMethod": "card"}, headers=headers)
    client.put(f"/orders/{order_id}/status", json={"status": "processing"}, headers=admin_headers)

    resp = client.put(
        f"/orders/{order_id}/status",
        json={"status": "shipped", "location": "Memphis hub", "trackingNumber": "TN-1", "carrier": "FedEx"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    order = resp.json()["order"]
    assert order["status_history"][-1]["location"] == "Memphis hub"
    assert order["status_history"][-1]["changed_by"] == "admin-001"
    assert order["shipping"]["carrier"] == "FedEx"

    out = client.put(f"/orders/{order_id}/status", json={"status": "out_for_delivery"}, headers=admin_headers)
    assert out.json()["order"]["status"] == "out_for_delivery"
    done = client.put(f"/orders/{order_id}/status", json={"status": "delivered"}, headers=admin_headers)
    assert done.json()["order"]["vendor_orders"][0]["status"] == "delivered"


def test_timeline_and_invoice(client, delivered_order):
    order_id = delivered_order["order_id"]
    headers = delivered_order["customer_headers"]

    timeline = client.get(f"/orders/{order_id}/timeline", headers=headers).json()
    assert timeline["current_status"] == "delivered"
    assert len(timeline["timeline"]) == 5

    invoice = client.get(f"/orders/{order_id}/invoice", headers=headers).json()["invoice"]
    assert invoice["invoice_number"] == f"INV-{delivered_order['order']['order_number']}"
    assert invoice["totals"]["total_amount"] == "78.83"
    assert invoice["lines"][0]["quantity"] == 3
    assert invoice["lines"][0]["line_total"] == "60.00"
    assert invoice["billing_address"] == invoice["shipping_address"]
    assert [t["amount"] for t in invoice["payment"]["transactions"]] == ["78.83"]


def test_customer_listing_paginates_and_sorts(client, auth_headers, make_product, place_order):
    headers = auth_headers(f"cust-list-{uuid4().hex[:6]}")
    product = make_product(price="10.00", stock=20)
    for quantity in (1, 3, 2):
        assert place_order(headers, [{"productId": product, "quantity": quantity}]).status_code == 201

    first = client.get("/orders", params={"limit": 2, "sort_by": "amount", "sort_order": "asc"}, headers=headers).json()
    assert first["pagination"] == {
        "current_page": 1,
        "total_pages": 2,
        "total_orders": 3,
        "has_next": True,
        "has_prev": False,
    }
    amounts = [o["total_amount"] for o in first["orders"]]
    assert amounts == sorted(amounts, key=float)
    assert [o["item_count"] for o in first["orders"]] == [1, 2]

    second = client.get("/orders", params={"limit": 2, "page": 2, "sort_by": "amount", "sort_order": "asc"}, headers=headers).json()
    assert [o["item_count"] for o in second["orders"]] == [3]
    assert second["pagination"]["has_prev"] is True

    assert client.get("/orders", params={"status": "cancelled"}, headers=headers).json()["orders"] == []
    assert client.get("/orders", params={"limit": 0}, headers=headers).status_code == 400


def test_search_is_scoped_to_the_caller(client, customer, auth_headers, admin_headers, make_product, place_order):
    _, headers = customer
    marker = uuid4().hex[:8]
    product = make_product(name=f"Searchable Lantern {marker}")
    created = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]

    by_item = client.get("/orders/search", params={"q": marker}, headers=headers).json()
    assert [o["id"] for o in by_item["orders"]] == [created["id"]]

    by_number = client.get("/orders/search", params={"q": created["order_number"]}, headers=admin_headers).json()
    assert [o["id"] for o in by_number["orders"]] == [created["id"]]

    stranger = client.get("/orders/search", params={"q": marker}, headers=auth_headers("cust-searcher")).json()
    assert stranger["orders"] == []

    priced_out = client.get(
        "/orders/search", params={"q": marker, "min_amount": "1000"}, headers=admin_headers
    ).json()
    assert priced_out["orders"] == []


def test_admin_listing_with_date_range(client, customer, admin_headers, make_product, place_order):
    _, headers = customer
    product = make_product()
    created = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]

    start = (now_utc() - timedelta(hours=1)).isoformat()
    end = (now_utc() + timedelta(hours=1)).isoformat()
    listing = client.get(
        "/orders/admin", params={"start_date": start, "end_date": end, "limit": 100}, headers=admin_headers
    )
    assert listing.status_code == 200
    assert created["id"] in [o["id"] for o in listing.json()["orders"]]

    backwards = client.get("/orders/admin", params={"start_date": end, "end_date": start}, headers=admin_headers)
    assert backwards.status_code == 400
    assert backwards.json()["error"] == "VALIDATION_ERROR"
    garbage = client.get("/orders/admin", params={"start_date": "last tuesday"}, headers=admin_headers)
    assert garbage.status_code == 400


def test_pending_and_overdue_queues(client, customer, admin_headers, auth_headers, make_product, place_order):
    _, headers = customer
    vendor_id = f"vendor-queue-{uuid4().hex[:6]}"
    product = make_product(vendor_id=vendor_id)
    order_id = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]

    vendor_pending = client.get("/orders/pending", headers=auth_headers(vendor_id, "vendor")).json()
    assert [o["id"] for o in vendor_pending["orders"]] == [order_id]
    assert vendor_pending["orders"][0]["vendor_status"] == "pending"

    assert order_id not in [o["id"] for o in client.get("/orders/overdue", headers=admin_headers).json()["orders"]]
    with pg.session_scope() as s:
        s.get(OrderModel, order_id).ordered_at = now_utc() - timedelta(days=45)
    overdue = client.get("/orders/overdue", headers=auth_headers(vendor_id, "vendor")).json()
    assert [o["id"] for o in overdue["orders"]] == [order_id]


def test_messages_route_to_the_other_party(client, customer, auth_headers, make_product, notifications, place_order):
    user_id, headers = customer
    vendor_id = f"vendor-msg-{uuid4().hex[:6]}"
    product = make_product(vendor_id=vendor_id)
    order_id = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]

    sent = client.post(f"/orders/{order_id}/message", json={"message": "Gift wrap please", "type": "vendor"}, headers=headers)
    assert sent.status_code == 200
    assert [n.event for n in notifications.for_recipient(vendor_id)][-1] == "message"
    assert client.get(f"/orders/{order_id}", headers=headers).json()["order"]["notes"]["customer"] == "Gift wrap please"

    vendor_headers = auth_headers(vendor_id, "vendor")
    reply = client.post(f"/orders/{order_id}/message", json={"message": "Will do", "type": "customer"}, headers=vendor_headers)
    assert reply.status_code == 200
    assert notifications.for_recipient(user_id)[-1].data["message"] == "Will do"
    assert client.get(f"/orders/{order_id}", headers=vendor_headers).json()["order"]["notes"]["vendor"] == "Will do"

    internal = client.post(f"/orders/{order_id}/message", json={"message": "psst", "type": "internal"}, headers=headers)
    assert internal.status_code == 403
    outsider = client.post(f"/orders/{order_id}/message", json={"message": "hi"}, headers=auth_headers("cust-outside"))
    assert outsider.status_code == 403


def test_soft_deleted_orders_disappear(client, customer, admin_headers, make_product, place_order):
    _, headers = customer
    product = make_product()
    created = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]

    assert client.delete(f"/orders/{created['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/orders/{created['id']}", headers=headers).status_code == 404
    assert client.get(f"/orders/track/{created['order_number']}").status_code == 404
    assert client.get("/orders", headers=headers).json()["pagination"]["total_orders"] == 0


def test_bulk_status_update_reports_each_order(client, customer, admin_headers, make_product, place_order):
    _, headers = customer
    product = make_product(stock=10)
    paid = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]
    unpaid = place_order(headers, [{"productId": product, "quantity": 1}]).json()["order"]["id"]
    client.post(f"/orders/{paid}/payment/confirm", json={"paymentMethod": "card"}, headers=headers)
    ghost = str(uuid4())

    resp = client.put(
        "/orders/admin/bulk",
        json={"orderIds": [paid, unpaid, ghost], "status": "processing", "notes": "batch"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert (body["updated"], body["failed"]) == (1, 2)
    errors = {r["order_id"]: r.get("error") for r in body["results"]}
    assert errors == {paid: None, unpaid: "INVALID_STATUS_TRANSITION", ghost: "ORDER_NOT_FOUND"}
    assert client.get(f"/orders/{paid}", headers=headers).json()["order"]["status"] == "processing"


def test_manual_refunds(client, customer, admin_headers, make_product, place_order):
    _, headers = customer
    product = make_product(price="20.00")
    order_id = place_order(headers, [{"productId": product, "quantity": 3}], method="express").json()["order"]["id"]

    unpaid = client.post(f"/orders/{order_id}/refund", json={"reason": "goodwill"}, headers=admin_headers)
    assert unpaid.status_code == 400
    assert unpaid.json()["error"] == "PAYMENT_NOT_COMPLETED"

    client.post(f"/orders/{order_id}/payment/confirm", json={"paymentMethod": "card"}, headers=headers)
    partial = client.post(f"/orders/{order_id}/refund", json={"reason": "goodwill", "amount": "5.00"}, headers=admin_headers)
    assert partial.status_code == 200
    assert partial.json()["payment_status"] == "partially_refunded"
    assert partial.json()["refund"]["amount"] == "5.00"
    assert client.get(f"/orders/{order_id}", headers=headers).json()["order"]["status"] == "payment_confirmed"

    too_much = client.post(f"/orders/{order_id}/refund", json={"reason": "oops", "amount": "80.00"}, headers=admin_headers)
    assert too_much.status_code == 400
    assert too_much.json()["error"] == "REFUND_EXCEEDS_PAYMENT"

    rest = client.post(f"/orders/{order_id}/refund", json={"reason": "full"}, headers=admin_headers)
    assert rest.json()["refund"]["amount"] == "73.83"
    assert rest.json()["payment_status"] == "refunded"


def test_refunds_against_a_delivered_order_move_its_status(client, delivered_order, admin_headers, notifications):
    order_id = delivered_order["order_id"]
    headers = delivered_order["customer_headers"]

    early = client.put(f"/orders/{order_id}/status", json={"status": "refunded"}, headers=admin_headers)
    assert early.status_code == 400
    assert early.json()["error"] == "INVALID_STATUS_TRANSITION"

    client.post(f"/orders/{order_id}/refund", json={"reason": "scratched", "amount": "10.00"}, headers=admin_headers)
    order = client.get(f"/orders/{order_id}", headers=headers).json()["order"]
    assert (order["status"], order["payment_status"]) == ("partially_refunded", "partially_refunded")
    assert order["status_history"][-1]["notes"] == "Refund of 10.00 issued: scratched"
    assert notifications.for_recipient(delivered_order["customer_id"])[-1].event == "partially_refunded"

    unsettled = client.put(f"/orders/{order_id}/status", json={"status": "refunded"}, headers=admin_headers)
    assert unsettled.status_code == 400
    assert unsettled.json()["error"] == "REFUND_NOT_SETTLED"

    rest = client.post(f"/orders/{order_id}/refund", json={"reason": "lost"}, headers=admin_headers)
    assert rest.json()["refund"]["amount"] == "68.83"
    order = client.get(f"/orders/{order_id}", headers=headers).json()["order"]
    assert (order["status"], order["payment_status"]) == ("refunded", "refunded")
    assert [h["status"] for h in order["status_history"]][-2:] == ["partially_refunded", "refunded"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/no-such-route").json() == {"detail": "Not Found", "error": "NOT_FOUND"}
