"""UTC time helpers.

All timestamps are stored and compared as timezone-aware UTC. Some drivers
(SQLite) hand back naive datetimes; as_utc() normalizes those.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    return as_utc(now)


def from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    """Convert a provider epoch timestamp (seconds) to UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
