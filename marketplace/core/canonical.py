from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from hashlib import sha256
from typing import Any
from uuid import UUID


class CanonicalError(ValueError):
    pass


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _amount(value: Decimal) -> str:
    # 20, 20.0 and 20.00 are one amount.
    text = format(value.normalize(), "f")
    return "0" if text == "-0" else text


def to_canonical_obj(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): to_canonical_obj(v)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if v is not None
        }
    if isinstance(value, (list, tuple)):
        return [to_canonical_obj(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return _iso_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return _amount(value)
    if isinstance(value, float):
        return _amount(Decimal(str(value)))
    if value is None or isinstance(value, (str, int, bool)):
        return value
    if hasattr(value, "model_dump"):
        return to_canonical_obj(value.model_dump(mode="python"))
    raise CanonicalError(f"unsupported canonical type: {type(value)!r}")


def canonical_json(value: Any) -> bytes:
    return json.dumps(to_canonical_obj(value), sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


def sha256_hex(value: Any) -> str:
    return sha256(canonical_json(value)).hexdigest()


def request_fingerprint(command: Any) -> str:
    """Hash of a request body for idempotent replay.

    Absent and null fields hash alike, and amounts compare by value, so a client
    retrying with ``20`` where it first sent ``20.00`` still matches.
    """
    return sha256_hex(command)
