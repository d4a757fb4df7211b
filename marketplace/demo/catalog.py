from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.core.clock import now_utc
from marketplace.persistence.models import ProductModel

DEMO_CATALOG_ID = "demo_marketplace_catalog_v1"

DEMO_PRODUCTS: list[dict[str, Any]] = [
    {
        "vendor_id": "vendor-acme",
        "store_id": "store-acme-outdoors",
        "name": "Trail Backpack 30L",
        "sku": "ACME-BP-30",
        "price": Decimal("20.00"),
        "compare_at_price": Decimal("29.99"),
        "stock_quantity": 50,
        "weight_kg": Decimal("1.2"),
        "variants": [
            {"name": "Large", "sku": "ACME-BP-30-L", "price_modifier": "5.00"},
            {"name": "Kids", "sku": "ACME-BP-30-K", "price_modifier": "-4.00"},
        ],
    },
    {
        "vendor_id": "vendor-acme",
        "store_id": "store-acme-outdoors",
        "name": "Insulated Water Bottle",
        "sku": "ACME-WB-01",
        "price": Decimal("10.00"),
        "stock_quantity": 120,
        "weight_kg": Decimal("0.4"),
    },
    {
        "vendor_id": "vendor-globex",
        "store_id": "store-globex-camp",
        "name": "Compact Camp Stove",
        "sku": "GLX-CS-01",
        "price": Decimal("25.00"),
        "stock_quantity": 3,
        "weight_kg": Decimal("0.9"),
    },
    {
        "vendor_id": "vendor-globex",
        "store_id": "store-globex-camp",
        "name": "Four Person Tent",
        "sku": "GLX-TN-04",
        "price": Decimal("149.00"),
        "stock_quantity": 8,
        "weight_kg": Decimal("6.5"),
        "allow_backorders": True,
    },
]


def seed_demo_catalog(session: Session, low_stock_threshold: int = 5) -> dict[str, Any]:
    """Insert the demo products that are missing; existing SKUs are left untouched."""
    existing = set(session.scalars(select(ProductModel.sku)).all())
    now = now_utc()
    created: list[str] = []
    for entry in DEMO_PRODUCTS:
        if entry["sku"] in existing:
            continue
        stock = entry["stock_quantity"]
        product = ProductModel(
            vendor_id=entry["vendor_id"],
            store_id=entry["store_id"],
            name=entry["name"],
            sku=entry["sku"],
            price=entry["price"],
            compare_at_price=entry.get("compare_at_price"),
            is_active=True,
            stock_status="low_stock" if stock <= low_stock_threshold else "in_stock",
            track_quantity=True,
            allow_backorders=entry.get("allow_backorders", False),
            stock_quantity=stock,
            weight_kg=entry.get("weight_kg"),
            variants=entry.get("variants", []),
            updated_at=now,
        )
        session.add(product)
        created.append(entry["sku"])
    session.flush()

    products = session.scalars(
        select(ProductModel).where(ProductModel.sku.in_([p["sku"] for p in DEMO_PRODUCTS])).order_by(ProductModel.sku)
    ).all()
    return {
        "catalog_id": DEMO_CATALOG_ID,
        "seeded_now": bool(created),
        "created_skus": created,
        "products": [
            {
                "id": p.id,
                "sku": p.sku,
                "name": p.name,
                "vendor_id": p.vendor_id,
                "price": f"{p.price:.2f}",
                "stock_quantity": p.stock_quantity,
                "stock_status": p.stock_status,
                "variants": [v["name"] for v in p.variants or []],
            }
            for p in products
        ],
    }
