from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

# Exclusive end of a one-minute window; at millisecond precision this is start + 59.999s inclusive
WINDOW_SPAN = timedelta(minutes=1)


# PUBLIC_INTERFACE
def utc_now() -> datetime:
    """
    Return the current instant as a timezone-naive UTC datetime.

    All stored timestamps live in this naive UTC instant space.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


# PUBLIC_INTERFACE
def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime into the naive UTC instant space.

    - None stays None
    - aware datetimes are converted to UTC and stripped of tzinfo
    - naive datetimes are assumed to already be UTC
    """
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# PUBLIC_INTERFACE
def claim_window(now: datetime) -> Tuple[datetime, datetime]:
    """
    Return the one-minute claim window containing `now`:
    [floor(now, 1 minute), floor(now, 1 minute) + 1 minute). Instants with
    sub-millisecond precision in the last millisecond still fall inside.
    """
    start = to_naive_utc(now).replace(second=0, microsecond=0)  # type: ignore[union-attr]
    return start, start + WINDOW_SPAN


# PUBLIC_INTERFACE
def to_epoch_seconds(value: datetime) -> int:
    """Convert a naive UTC (or aware) datetime to integer epoch seconds."""
    naive = to_naive_utc(value)
    return int(naive.replace(tzinfo=timezone.utc).timestamp())  # type: ignore[union-attr]


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width so stored strings compare in instant order
    if value is None:
        return None
    return to_naive_utc(value).isoformat(timespec="microseconds")  # type: ignore[union-attr]
