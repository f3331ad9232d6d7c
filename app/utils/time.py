"""Time utility helpers."""

from __future__ import annotations

from datetime import UTC, date, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.utils.errors import InvalidInputError


def now_utc() -> datetime:
    """Return current timezone-aware UTC datetime."""
    return datetime.now(tz=UTC)


def parse_iso_date(value: str | date | None, default: date | None = None) -> date:
    """Parse an ISO date (or the date part of a timestamp) with an optional default."""
    if not value:
        if default is None:
            raise ValueError("Missing required date value")
        return default
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a PostgREST timestamp into an aware UTC datetime."""
    if not value:
        return None

    if isinstance(value, str):
        normalized = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(normalized)
    else:
        parsed = value

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a UTC ISO-8601 string for storage."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def get_zone(name: str) -> tzinfo:
    """Resolve an IANA timezone name."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidInputError(f"Unknown timezone: {name}") from exc


def seconds_between(start: datetime, end: datetime) -> int:
    """Return whole seconds from ``start`` to ``end``, floored at zero."""
    return max(0, int((end - start).total_seconds()))
