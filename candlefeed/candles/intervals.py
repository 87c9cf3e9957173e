from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict

log = logging.getLogger("intervals")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEFAULT_DURATION = timedelta(minutes=1)

DURATIONS: Dict[str, timedelta] = {
    "1m": timedelta(minutes=1),
    "3m": timedelta(minutes=3),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "2h": timedelta(hours=2),
    "4h": timedelta(hours=4),
    "6h": timedelta(hours=6),
    "8h": timedelta(hours=8),
    "12h": timedelta(hours=12),
    "1d": timedelta(days=1),
    "3d": timedelta(days=3),
    "1w": timedelta(weeks=1),
    # Month buckets are approximated for duration purposes only.
    "1M": timedelta(days=30),
}


def to_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def is_known_interval(interval: str) -> bool:
    return interval in DURATIONS


def duration_of(interval: str) -> timedelta:
    """
    Duration of one candle window.
    Unknown labels fall back to 1 minute so a bad config never stops the pipeline.
    The engine warns once per subscription; this stays quiet on the hot path.
    """
    duration = DURATIONS.get(interval)
    if duration is None:
        log.debug("Unknown interval=%r, using 1m", interval)
        return DEFAULT_DURATION
    return duration


def window_start(ts: datetime, interval: str) -> datetime:
    """Round timestamp down to the start of its window (UTC)."""
    ts = to_utc(ts)

    if interval == "1w":
        monday = ts - timedelta(days=ts.weekday())
        return monday.replace(hour=0, minute=0, second=0, microsecond=0)

    if interval == "1M":
        return ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    duration = duration_of(interval)
    return EPOCH + ((ts - EPOCH) // duration) * duration


def window_end(start_ts: datetime, interval: str) -> datetime:
    """Exclusive end of the window that starts at start_ts."""
    start = window_start(start_ts, interval)
    if interval == "1M":
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start + duration_of(interval)


def same_window(t1: datetime, t2: datetime, interval: str) -> bool:
    return window_start(t1, interval) == window_start(t2, interval)


def is_likely_final(start_ts: datetime, interval: str, now: datetime, grace_seconds: float) -> bool:
    """
    Pull APIs don't report whether a candle is closed.
    Treat it as final once `grace_seconds` have passed since the window ended.
    """
    return to_utc(now) > window_end(start_ts, interval) + timedelta(seconds=grace_seconds)
