from __future__ import annotations

import base64
import hmac
import json
import time
from enum import Enum
from hashlib import sha256
from typing import Literal

from fastapi import Header, HTTPException
from pydantic import BaseModel

from marketplace.core.config import get_settings

Role = Literal["customer", "vendor", "admin"]
ROLES: tuple[str, ...] = ("customer", "vendor", "admin")


class Capability(str, Enum):
    PLACE_ORDERS = "place_orders"
    VIEW_ALL_ORDERS = "view_all_orders"
    MANAGE_ORDER_STATUS = "manage_order_status"
    FULFILL_ORDERS = "fulfill_orders"
    PROCESS_RETURNS = "process_returns"
    WRITE_INTERNAL_NOTES = "write_internal_notes"
    SEED_CATALOG = "seed_catalog"


ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "customer": frozenset({Capability.PLACE_ORDERS}),
    "vendor": frozenset(
        {
            Capability.PLACE_ORDERS,
            Capability.MANAGE_ORDER_STATUS,
            Capability.FULFILL_ORDERS,
            Capability.PROCESS_RETURNS,
        }
    ),
    "admin": frozenset(Capability),
}


class Actor(BaseModel):
    id: str
    role: Role
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def capabilities(self) -> frozenset[Capability]:
        return ROLE_CAPABILITIES[self.role]

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_vendor(self) -> bool:
        return self.role == "vendor"


def _auth_error(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _token_key() -> bytes:
    return get_settings().token_signing_secret.encode("utf-8")


def create_access_token(
    user_id: str,
    role: str,
    ttl_seconds: int | None = None,
    name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role: {role}")
    now = int(time.time())
    ttl = ttl_seconds if ttl_seconds is not None else get_settings().access_token_ttl_seconds
    payload = {
        "sub": user_id,
        "role": role,
        "name": name,
        "email": email,
        "phone": phone,
        "iat": now,
        "exp": now + ttl,
    }
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    mac = hmac.new(_token_key(), body, sha256).digest()
    return base64.urlsafe_b64encode(body + mac).decode("ascii")


def verify_access_token(token: str) -> Actor:
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise _auth_error("invalid token encoding") from exc

    if len(raw) <= 32:
        raise _auth_error("invalid token body")

    body, mac = raw[:-32], raw[-32:]
    expected = hmac.new(_token_key(), body, sha256).digest()
    if not hmac.compare_digest(mac, expected):
        raise _auth_error("token signature mismatch")

    payload = json.loads(body.decode("utf-8"))
    if int(time.time()) > int(payload.get("exp", 0)):
        raise _auth_error("token expired")
    if payload.get("role") not in ROLES or not payload.get("sub"):
        raise _auth_error("token claims invalid")
    return Actor(
        id=str(payload["sub"]),
        role=payload["role"],
        name=payload.get("name"),
        email=payload.get("email"),
        phone=payload.get("phone"),
    )


def get_actor(authorization: str | None = Header(default=None)) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(id=settings.dev_actor_id, role="admin", name="Dev Admin")

    if not authorization:
        raise _auth_error("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _auth_error("invalid authorization header")
    return verify_access_token(token.strip())

