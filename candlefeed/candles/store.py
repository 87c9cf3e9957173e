from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from candlefeed.candles.intervals import window_start
from candlefeed.models.market import Candle, MergeResult, StreamKey, StreamUpdate, utcnow

log = logging.getLogger("candle_store")


@dataclass
class CandleStore:
    """
    In-memory candle buffers, one per stream key.

    buffers[key]       -> candles ordered by start_ts (strictly increasing), at most max_candles
    last_updated[key]  -> when we last mutated that buffer

    Buffers only change through merge() / load_history().
    """
    max_candles: int = 1000
    search_depth: int = 10
    buffers: Dict[StreamKey, List[Candle]] = field(default_factory=dict)
    last_updated: Dict[StreamKey, datetime] = field(default_factory=dict)

    def touch(self, key: StreamKey) -> None:
        """Mark this buffer as updated right now."""
        self.last_updated[key] = utcnow()

    # -------------------------
    # Merge
    # -------------------------
    def merge(self, update: StreamUpdate) -> MergeResult:
        """
        Merge one update into its buffer.

        - same window as the newest candle -> replace it (partial candle being refined)
        - newer window -> append, evict oldest past the cap
        - older window -> replace a recent match, else ignore (too stale)
        """
        key = update.key
        incoming = update.candle

        if not incoming.is_valid():
            return MergeResult(action="invalid")

        incoming = replace(
            incoming,
            start_ts=window_start(incoming.start_ts, key.interval),
            is_final=incoming.is_final or update.is_final,
        )

        buf = self.buffers.setdefault(key, [])

        if not buf:
            buf.append(incoming)
            self.touch(key)
            return MergeResult(action="appended", index=0)

        last = buf[-1]

        if incoming.start_ts == last.start_ts:
            return self._replace_at(key, buf, len(buf) - 1, incoming)

        if incoming.start_ts > last.start_ts:
            buf.append(incoming)
            evicted = 0
            if len(buf) > self.max_candles:
                evicted = len(buf) - self.max_candles
                del buf[:evicted]
            self.touch(key)
            return MergeResult(action="appended", index=len(buf) - 1, evicted=evicted)

        # Older than the newest candle: look back through the most recent few only.
        lowest = max(0, len(buf) - 1 - self.search_depth)
        for i in range(len(buf) - 2, lowest - 1, -1):
            if buf[i].start_ts == incoming.start_ts:
                return self._replace_at(key, buf, i, incoming)

        return MergeResult(action="ignored")

    def _replace_at(self, key: StreamKey, buf: List[Candle], index: int, incoming: Candle) -> MergeResult:
        previous = buf[index]
        # Finality only moves forward; prices always take the newest values.
        if previous.is_final and not incoming.is_final:
            incoming = replace(incoming, is_final=True)

        buf[index] = incoming
        buf.sort(key=lambda c: c.start_ts)
        self.touch(key)
        return MergeResult(action="updated", index=buf.index(incoming), previous=previous)

    def load_history(self, key: StreamKey, candles: Iterable[Candle]) -> int:
        """
        Replace a buffer in one shot (initial historical load).
        Invalid candles are dropped; for duplicate windows the last one wins.
        Returns how many candles were kept.
        """
        by_window: Dict[datetime, Candle] = {}
        dropped = 0
        for candle in candles:
            if not candle.is_valid():
                dropped += 1
                continue
            start = window_start(candle.start_ts, key.interval)
            by_window[start] = replace(candle, start_ts=start)

        if dropped:
            log.warning("Dropped invalid historical candles key=%s count=%d", key, dropped)

        ordered = [by_window[k] for k in sorted(by_window)]
        self.buffers[key] = ordered[-self.max_candles:]
        self.touch(key)
        return len(self.buffers[key])

    # -------------------------
    # Reads
    # -------------------------
    def get_buffer(self, key: StreamKey) -> List[Candle]:
        """Snapshot copy; empty for unknown keys."""
        return list(self.buffers.get(key, []))

    def get_latest(self, key: StreamKey) -> Optional[Candle]:
        buf = self.buffers.get(key)
        if not buf:
            return None
        return buf[-1]

    def get_last_updated(self, key: StreamKey) -> Optional[datetime]:
        return self.last_updated.get(key)

    def keys(self) -> List[StreamKey]:
        return list(self.buffers)

    def drop(self, key: StreamKey) -> None:
        self.buffers.pop(key, None)
        self.last_updated.pop(key, None)

    def clear(self) -> None:
        self.buffers.clear()
        self.last_updated.clear()
