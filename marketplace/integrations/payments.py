from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import uuid4

import httpx

from marketplace.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

DECLINED_TEST_TOKEN = "tok_chargeDeclined"


@dataclass
class GatewayResult:
    """Outcome of an authorize or refund call. Declines are results, not exceptions."""

    ok: bool
    reference: str | None = None
    error: str | None = None
    unavailable: bool = False
    raw: dict[str, Any] | None = None

    @classmethod
    def success(cls, reference: str, raw: dict[str, Any] | None = None) -> "GatewayResult":
        return cls(ok=True, reference=reference, raw=raw)

    @classmethod
    def declined(cls, error: str, raw: dict[str, Any] | None = None) -> "GatewayResult":
        return cls(ok=False, error=error, raw=raw)

    @classmethod
    def down(cls, error: str) -> "GatewayResult":
        return cls(ok=False, error=error, unavailable=True)


class PaymentGateway(Protocol):
    provider_name: str

    def authorize(
        self,
        amount: Decimal,
        currency: str,
        method: str,
        payment_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayResult:
        ...

    def refund(self, transaction_ref: str, amount: Decimal, reason: str | None = None) -> GatewayResult:
        ...


def _minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class HTTPPaymentGateway:
    provider_name = "http"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.payment_gateway_url.rstrip("/")
        self.timeout = max(1, self.settings.payment_gateway_timeout_seconds)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.payment_gateway_api_key}",
        }

    def _request(self, method: str, path: str, *, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        with httpx.Client(timeout=self.timeout) as client:
            response = client.request(method, url, headers=self._headers(), json=json_body)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict):
            return payload
        return {"result": payload}

    def _call(self, path: str, body: dict[str, Any]) -> GatewayResult:
        try:
            payload = self._request("POST", path, json_body=body)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code >= 500:
                return GatewayResult.down(f"gateway error {exc.response.status_code}")
            try:
                detail = exc.response.json()
            except ValueError:
                detail = {}
            message = (detail.get("error") or detail.get("message")) if isinstance(detail, dict) else None
            return GatewayResult.declined(str(message or f"gateway rejected request ({exc.response.status_code})"))
        except httpx.HTTPError as exc:
            logger.warning("payment gateway unreachable: path=%s error=%s", path, exc)
            return GatewayResult.down(f"gateway unreachable: {exc}")

        if payload.get("status") not in {"succeeded", "approved"}:
            return GatewayResult.declined(str(payload.get("error") or "payment declined"), raw=payload)
        reference = payload.get("id") or payload.get("reference")
        if not reference:
            return GatewayResult.declined(f"gateway response missing reference: {payload}", raw=payload)
        return GatewayResult.success(str(reference), raw=payload)

    def authorize(
        self,
        amount: Decimal,
        currency: str,
        method: str,
        payment_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayResult:
        return self._call(
            "/v1/authorizations",
            {
                "amount": _minor_units(amount),
                "currency": currency.lower(),
                "method": method,
                "payment_data": payment_data or {},
                "metadata": metadata or {},
                "capture": True,
            },
        )

    def refund(self, transaction_ref: str, amount: Decimal, reason: str | None = None) -> GatewayResult:
        return self._call(
            "/v1/refunds",
            {"transaction": transaction_ref, "amount": _minor_units(amount), "reason": reason},
        )


@dataclass
class FakePaymentGateway:
    """In-process gateway for dev and tests.

    Declines when ``payment_data["token"]`` is the declined test token; ``available``
    and ``refunds_fail`` flip the other outcomes.
    """

    provider_name: str = "fake"
    available: bool = True
    refunds_fail: bool = False
    authorizations: list[dict[str, Any]] = field(default_factory=list)
    refunds: list[dict[str, Any]] = field(default_factory=list)

    def authorize(
        self,
        amount: Decimal,
        currency: str,
        method: str,
        payment_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> GatewayResult:
        if not self.available:
            return GatewayResult.down("fake gateway offline")
        token = (payment_data or {}).get("token")
        if token == DECLINED_TEST_TOKEN:
            return GatewayResult.declined("card declined")
        reference = f"fake_txn_{uuid4().hex[:16]}"
        self.authorizations.append(
            {"reference": reference, "amount": Decimal(amount), "currency": currency, "method": method, "metadata": metadata}
        )
        return GatewayResult.success(reference)

    def refund(self, transaction_ref: str, amount: Decimal, reason: str | None = None) -> GatewayResult:
        if not self.available:
            return GatewayResult.down("fake gateway offline")
        if self.refunds_fail:
            return GatewayResult.declined("refund rejected by gateway")
        reference = f"fake_re_{uuid4().hex[:16]}"
        self.refunds.append({"reference": reference, "transaction": transaction_ref, "amount": Decimal(amount), "reason": reason})
        return GatewayResult.success(reference)


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    cfg = settings or get_settings()
    if cfg.payment_gateway == "http":
        return HTTPPaymentGateway(cfg)
    return FakePaymentGateway()
