"""Wall-clock helpers used for every expiry calculation.

All persisted timestamps are naive UTC. Services call ``clock.utcnow()``
through the module so tests can patch a single seam.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a driver-returned datetime to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def milliseconds_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)
