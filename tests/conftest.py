from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import marketplace.persistence.pg as pg
from marketplace.core.clock import now_utc
from marketplace.core.config import get_settings
from marketplace.core.security import create_access_token
from marketplace.integrations.notifications import MemoryNotificationDispatcher
from marketplace.integrations.payments import FakePaymentGateway
from marketplace.persistence.models import Base, ProductModel

SHIPPING_ADDRESS = {
    "line1": "1 Main St",
    "city": "Springfield",
    "postalCode": "12345",
    "country": "US",
}


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.auth_enabled = True
    settings.payment_gateway = "fake"
    settings.notification_backend = "memory"
    settings.coupons = {
        "SAVE10": {"type": "percentage", "value": 10},
        "FIVEOFF": {"type": "fixed_amount", "value": 5, "min_order_amount": 50},
    }

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def notifications() -> MemoryNotificationDispatcher:
    return MemoryNotificationDispatcher()


@pytest.fixture()
def client(configure_test_engine, gateway, notifications):
    from marketplace.main import app

    app.state.payment_gateway = gateway
    app.state.notification_dispatcher = notifications
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    def _headers(user_id: str, role: str = "customer", **claims) -> dict[str, str]:
        token = create_access_token(user_id, role, **claims)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def customer(auth_headers):
    user_id = f"cust-{uuid4().hex[:8]}"
    return user_id, auth_headers(user_id, "customer", name="Casey Buyer", email="casey@example.com")


@pytest.fixture()
def admin_headers(auth_headers):
    return auth_headers("admin-001", "admin", name="Ops Admin")


@pytest.fixture()
def make_product(configure_test_engine):
    def _make(
        price: str = "20.00",
        stock: int = 10,
        vendor_id: str | None = None,
        weight_kg: str | None = "1",
        **overrides,
    ) -> str:
        vendor_id = vendor_id or f"vendor-{uuid4().hex[:6]}"
        fields = {
            "vendor_id": vendor_id,
            "store_id": f"store-{vendor_id}",
            "name": f"Product {uuid4().hex[:6]}",
            "sku": f"SKU-{uuid4().hex[:10]}",
            "price": Decimal(price),
            "is_active": True,
            "stock_status": "in_stock",
            "track_quantity": True,
            "allow_backorders": False,
            "stock_quantity": stock,
            "weight_kg": Decimal(weight_kg) if weight_kg is not None else None,
            "variants": [],
            "updated_at": now_utc(),
        }
        fields.update(overrides)
        with pg.session_scope() as s:
            product = ProductModel(**fields)
            s.add(product)
            s.flush()
            return product.id

    return _make


@pytest.fixture()
def stock_of(configure_test_engine):
    def _stock(product_id: str) -> int:
        with pg.session_scope() as s:
            return s.get(ProductModel, product_id).stock_quantity

    return _stock


@pytest.fixture()
def place_order(client):
    def _place(headers: dict, items: list[dict], method: str = "standard", **extra):
        body = {
            "items": items,
            "shipping": {"method": method, "address": SHIPPING_ADDRESS},
            "paymentMethod": "card",
            **extra,
        }
        request_headers = dict(headers)
        key = body.pop("idempotency_key", None)
        if key:
            request_headers["Idempotency-Key"] = key
        return client.post("/orders", json=body, headers=request_headers)

    return _place


@pytest.fixture()
def delivered_order(client, customer, admin_headers, make_product, place_order):
    """A paid single-vendor order of 3 units at 20.00, walked through to delivered."""
    user_id, headers = customer
    vendor_id = f"vendor-{uuid4().hex[:6]}"
    product_id = make_product(price="20.00", stock=10, vendor_id=vendor_id)
    created = place_order(headers, [{"productId": product_id, "quantity": 3}], method="express")
    assert created.status_code == 201, created.text
    order_id = created.json()["order"]["id"]

    assert client.post(
        f"/orders/{order_id}/payment/confirm", json={"paymentMethod": "card"}, headers=headers
    ).status_code == 200
    assert client.put(f"/orders/{order_id}/status", json={"status": "processing"}, headers=admin_headers).status_code == 200
    assert client.post(
        f"/orders/{order_id}/ship", json={"trackingNumber": "1Z999", "carrier": "UPS"}, headers=admin_headers
    ).status_code == 200
    delivered = client.post(f"/orders/{order_id}/deliver", json={}, headers=admin_headers)
    assert delivered.status_code == 200, delivered.text
    return {
        "order_id": order_id,
        "product_id": product_id,
        "vendor_id": vendor_id,
        "customer_id": user_id,
        "customer_headers": headers,
        "order": delivered.json()["order"],
    }
