"""
Timestamp helpers.

Everything persisted by the engine is naive UTC (SQLite has no timezone
type). Google speaks RFC 3339 with either a "Z" suffix or an offset, and
all-day calendar entries use a bare "YYYY-MM-DD" date.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp or bare date into naive UTC.

    Returns None for empty or unparseable input rather than raising, since
    provider payloads are not trusted to be well-formed.
    """
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        if len(s) == 10:
            return datetime.combine(date.fromisoformat(s), datetime.min.time())
        return to_naive_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


def to_rfc3339(value: Union[datetime, date]) -> str:
    """Format a naive-UTC (or aware) datetime as RFC 3339 with a Z suffix."""
    if not isinstance(value, datetime):
        return value.isoformat()
    value = to_naive_utc(value)
    return value.replace(microsecond=0).isoformat() + "Z"
