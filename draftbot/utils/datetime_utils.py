"""Timestamp helpers. Stored datetimes are naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching what the database returns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp from stored settings into naive UTC."""
    return to_naive_utc(datetime.fromisoformat(value))
