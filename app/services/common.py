from __future__ import annotations

import uuid
from datetime import UTC, datetime

from app.services.bitrix24.errors import ValidationError


def coerce_uuid(value, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc


def coerce_optional_uuid(value, field: str = "id") -> uuid.UUID | None:
    if value in (None, ""):
        return None
    return coerce_uuid(value, field)


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
