"""Clock helpers shared by probes, the scorer and the state store.

Everything is UTC: scan timestamps and certificate validity windows alike.
"""

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def duration_ms(start: datetime, end: Optional[datetime] = None) -> float:
    """Elapsed milliseconds from start to end (or to now)."""
    elapsed = (end or now_utc()) - start
    return elapsed.total_seconds() * 1000.0
