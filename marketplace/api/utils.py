from __future__ import annotations

from datetime import datetime, timezone

from marketplace.core.errors import ValidationFailed


def parse_instant(text: str, field: str) -> datetime:
    try:
        value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationFailed(f"{field} must be an ISO-8601 date or datetime") from exc
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    start_at = parse_instant(start, "start_date") if start else None
    end_at = parse_instant(end, "end_date") if end else None
    if start_at is not None and end_at is not None and not end_at > start_at:
        raise ValidationFailed("end_date must be greater than start_date")
    return start_at, end_at
