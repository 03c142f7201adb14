"""Shared datetime helpers. Persisted timestamps are naive UTC."""

from datetime import datetime, timezone

from dateutil import parser


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_rfc3339(value: datetime) -> str:
    """Format a (naive UTC or aware) datetime as RFC 3339 with a Z suffix"""
    return to_naive_utc(value).replace(microsecond=0).isoformat() + "Z"


def parse_provider_datetime(value: str) -> datetime:
    """
    Parse provider timestamps into naive UTC.

    Handles "2024-01-15T10:00:00Z", offsets like "+02:00", date-only values
    ("2024-01-15") and Graph's 7-digit fractions ("2024-01-15T10:00:00.0000000").
    Values without an offset are taken as UTC.
    """
    return to_naive_utc(parser.isoparse(value.strip()))
