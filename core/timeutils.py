"""
Time helpers.

All timestamps stored by the sync engine are naive UTC datetimes.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional, Union

Watermark = Union[datetime, date, str]


def utcnow() -> datetime:
    """Current UTC time without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def format_watermark(value: Any) -> Optional[str]:
    """Serialize a watermark value for storage"""
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def parse_watermark(value: Optional[str]) -> Optional[Watermark]:
    """
    Inverse of format_watermark.

    ISO dates come back as date, ISO timestamps as datetime, anything else
    is returned unchanged.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        return value
    try:
        if "T" in value or " " in value:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        return date.fromisoformat(value)
    except ValueError:
        return value
