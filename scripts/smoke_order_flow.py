#!/usr/bin/env python3
"""Drive one order through its lifecycle against a running server.

Seeds the demo catalog, places an express order for three backpacks, pays,
moves it to processing, ships, delivers, and prints the final timeline.
"""
from __future__ import annotations

import argparse
import json
import uuid

import requests

from marketplace.core.security import create_access_token


def _call(method: str, url: str, token: str, **kwargs) -> dict:
    headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
    resp = requests.request(method, url, headers=headers, timeout=30, **kwargs)
    if resp.status_code >= 400:
        raise SystemExit(f"{method} {url} -> {resp.status_code}: {resp.text}")
    return resp.json()


def main() -> None:
    parser = argparse.ArgumentParser(description="Order lifecycle smoke test")
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()
    base = args.base_url.rstrip("/")

    admin = create_access_token("admin-smoke", "admin")
    customer = create_access_token(
        f"customer-{uuid.uuid4().hex[:8]}", "customer", name="Smoke Customer", email="smoke@example.com"
    )

    catalog = _call("POST", f"{base}/demo/seed", admin)
    backpack = next(p for p in catalog["products"] if p["sku"] == "ACME-BP-30")

    created = _call(
        "POST",
        f"{base}/orders",
        customer,
        headers={"Idempotency-Key": uuid.uuid4().hex},
        json={
            "items": [{"productId": backpack["id"], "quantity": 3}],
            "shipping": {
                "method": "express",
                "address": {"line1": "1 Main St", "city": "Springfield", "postalCode": "12345", "country": "US"},
            },
            "paymentMethod": "card",
        },
    )
    order_id = created["order"]["id"]
    print("created", created["order"]["order_number"], created["order"]["pricing"])

    _call("POST", f"{base}/orders/{order_id}/payment/confirm", customer, json={"paymentMethod": "card"})
    _call("PUT", f"{base}/orders/{order_id}/status", admin, json={"status": "processing"})
    _call(
        "POST",
        f"{base}/orders/{order_id}/ship",
        admin,
        json={"trackingNumber": "1Z999", "carrier": "UPS"},
    )
    delivered = _call("POST", f"{base}/orders/{order_id}/deliver", admin, json={})
    print("status", delivered["order"]["status"])

    timeline = _call("GET", f"{base}/orders/{order_id}/timeline", customer)
    print(json.dumps(timeline, indent=2))


if __name__ == "__main__":
    main()
