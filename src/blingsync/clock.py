"""UTC time helpers.

Timestamps are timezone-aware UTC everywhere, in memory and in the database
(SQLModel's datetime columns reject naive values and hand back UTC). Values
from outside, such as query parameters, go through as_utc() first.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

# Bling reads bare date-times as Brasília time (UTC-3, no DST since 2019)
BLING_TZ = timezone(timedelta(hours=-3))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_bling_datetime(value: datetime) -> str:
    """Render an instant as Bling's "YYYY-MM-DD HH:MM:SS" in Brasília time.

    Sub-second precision is dropped, so the rendered bound is never later
    than the instant itself.
    """
    return as_utc(value).astimezone(BLING_TZ).strftime("%Y-%m-%d %H:%M:%S")
