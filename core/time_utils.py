"""UTC timestamp helpers shared by the data model and components."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp, treating naive values as UTC.

    Accepts a trailing "Z" as produced by JavaScript and Swift clients.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def optional_iso(value: Optional[datetime]) -> Optional[str]:
    return to_iso(value) if value is not None else None


def optional_from_iso(value: Optional[str]) -> Optional[datetime]:
    return from_iso(value) if value else None
