from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from marketplace.core.config import Settings
from marketplace.integrations.payments import (
    DECLINED_TEST_TOKEN,
    FakePaymentGateway,
    HTTPPaymentGateway,
    build_payment_gateway,
)


def _status_error(status_code: int, body: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://payments.test/v1/authorizations")
    response = httpx.Response(status_code, json=body or {}, request=request)
    return httpx.HTTPStatusError(f"status {status_code}", request=request, response=response)


@pytest.fixture()
def http_gateway() -> HTTPPaymentGateway:
    return HTTPPaymentGateway(Settings(payment_gateway="http", payment_gateway_url="http://payments.test/"))


def test_http_gateway_authorizes_in_minor_units(http_gateway, monkeypatch):
    calls = []

    def fake_request(method, path, *, json_body=None):
        calls.append((method, path, json_body))
        return {"status": "succeeded", "id": "ch_123"}

    monkeypatch.setattr(http_gateway, "_request", fake_request)
    result = http_gateway.authorize(Decimal("78.83"), "USD", "card", {"token": "tok_visa"}, {"order_id": "o-1"})

    assert result.ok
    assert result.reference == "ch_123"
    method, path, body = calls[0]
    assert (method, path) == ("POST", "/v1/authorizations")
    assert body["amount"] == 7883
    assert body["currency"] == "usd"
    assert body["metadata"] == {"order_id": "o-1"}
    assert http_gateway.base_url == "http://payments.test"


def test_http_gateway_refund_payload(http_gateway, monkeypatch):
    calls = []
    monkeypatch.setattr(
        http_gateway,
        "_request",
        lambda method, path, *, json_body=None: calls.append((path, json_body)) or {"status": "approved", "reference": "re_9"},
    )

    result = http_gateway.refund("ch_123", Decimal("20.00"), "damaged")
    assert result.ok and result.reference == "re_9"
    assert calls == [("/v1/refunds", {"transaction": "ch_123", "amount": 2000, "reason": "damaged"})]


@pytest.mark.parametrize(
    ("error", "unavailable", "message"),
    [
        (_status_error(402, {"error": "card_declined"}), False, "card_declined"),
        (_status_error(422, {"message": "bad card"}), False, "bad card"),
        (_status_error(503), True, "gateway error 503"),
        (httpx.ConnectError("connection refused"), True, "gateway unreachable: connection refused"),
    ],
)
def test_http_gateway_failures_become_results(http_gateway, monkeypatch, error, unavailable, message):
    def fake_request(method, path, *, json_body=None):
        raise error

    monkeypatch.setattr(http_gateway, "_request", fake_request)
    result = http_gateway.authorize(Decimal("1.00"), "USD", "card")

    assert not result.ok
    assert result.unavailable is unavailable
    assert result.error == message


@pytest.mark.parametrize(
    "payload",
    [{"status": "failed", "error": "insufficient funds"}, {"status": "succeeded"}],
)
def test_http_gateway_requires_success_and_reference(http_gateway, monkeypatch, payload):
    monkeypatch.setattr(http_gateway, "_request", lambda method, path, *, json_body=None: payload)
    result = http_gateway.authorize(Decimal("1.00"), "USD", "card")
    assert not result.ok
    assert not result.unavailable
    assert result.raw == payload


def test_fake_gateway_outcomes():
    gateway = FakePaymentGateway()

    approved = gateway.authorize(Decimal("10.00"), "USD", "card", {"token": "tok_visa"})
    assert approved.ok and approved.reference.startswith("fake_txn_")
    assert gateway.authorize(Decimal("10.00"), "USD", "card", {"token": DECLINED_TEST_TOKEN}).error == "card declined"

    refund = gateway.refund(approved.reference, Decimal("4.00"))
    assert refund.ok and refund.reference.startswith("fake_re_")
    assert gateway.refunds[0]["transaction"] == approved.reference

    gateway.refunds_fail = True
    assert not gateway.refund(approved.reference, Decimal("1.00")).ok

    gateway.available = False
    offline = gateway.authorize(Decimal("10.00"), "USD", "card")
    assert offline.unavailable
    assert len(gateway.authorizations) == 1


def test_build_payment_gateway_follows_settings():
    assert isinstance(build_payment_gateway(Settings(payment_gateway="fake")), FakePaymentGateway)
    assert isinstance(build_payment_gateway(Settings(payment_gateway="http")), HTTPPaymentGateway)
