from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Optional

from candlefeed.candles.intervals import window_start
from candlefeed.models.market import MergeResult, StreamKey, StreamUpdate, utcnow
from candlefeed.models.status import StreamQuality


@dataclass
class _Counters:
    started: float = field(default_factory=time.monotonic)
    updates: int = 0
    appended: int = 0
    replaced: int = 0
    duplicates: int = 0
    out_of_order: int = 0
    price_changes: int = 0
    ignored: int = 0
    invalid: int = 0
    fetch_errors: int = 0
    last_close: Optional[float] = None
    last_update: Optional[datetime] = None
    recent_errors: Deque[str] = field(default_factory=lambda: deque(maxlen=5))


class DataQualityTracker:
    """
    Counts what the merge path saw, per stream key.

    It only observes: feed it the update and the MergeResult the buffer returned.
    """

    def __init__(self) -> None:
        self._counters: Dict[StreamKey, _Counters] = {}

    def _get(self, key: StreamKey) -> _Counters:
        counters = self._counters.get(key)
        if counters is None:
            counters = _Counters()
            self._counters[key] = counters
        return counters

    def record(self, update: StreamUpdate, result: MergeResult, newest_before: Optional[datetime] = None) -> None:
        """
        newest_before: start_ts of the newest buffered candle before the merge,
        used to spot out-of-order arrivals.
        """
        counters = self._get(update.key)
        counters.updates += 1
        counters.last_update = utcnow()

        if result.action == "invalid":
            counters.invalid += 1
            return

        start = window_start(update.candle.start_ts, update.key.interval)
        if newest_before is not None and start < newest_before:
            counters.out_of_order += 1

        if result.action == "ignored":
            counters.ignored += 1
            return

        if result.action == "appended":
            counters.appended += 1
        elif result.action == "updated":
            counters.replaced += 1
            if result.previous is not None and result.previous.same_prices(update.candle):
                counters.duplicates += 1

        close = update.candle.c
        if counters.last_close is not None and close != counters.last_close:
            counters.price_changes += 1
        counters.last_close = close

    def record_fetch_error(self, key: StreamKey, error: BaseException) -> None:
        counters = self._get(key)
        counters.fetch_errors += 1
        counters.recent_errors.append(f"{type(error).__name__}: {error}")

    def snapshot(self, key: StreamKey) -> StreamQuality:
        counters = self._counters.get(key)
        if counters is None:
            return StreamQuality(symbol=key.symbol, interval=key.interval)

        elapsed = time.monotonic() - counters.started
        rate = counters.updates / elapsed if elapsed > 0 else 0.0

        return StreamQuality(
            symbol=key.symbol,
            interval=key.interval,
            updates=counters.updates,
            appended=counters.appended,
            replaced=counters.replaced,
            duplicates=counters.duplicates,
            out_of_order=counters.out_of_order,
            price_changes=counters.price_changes,
            ignored=counters.ignored,
            invalid=counters.invalid,
            fetch_errors=counters.fetch_errors,
            updates_per_second=round(rate, 2),
            last_update=counters.last_update.isoformat() if counters.last_update else None,
            audit=list(counters.recent_errors),
        )

    def reset(self, key: Optional[StreamKey] = None) -> None:
        if key is None:
            self._counters.clear()
        else:
            self._counters.pop(key, None)
