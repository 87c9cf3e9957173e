from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


@dataclass(frozen=True)
class StreamKey:
    """
    Identity of one subscription.

    symbol: upper-case market symbol (e.g., BTCUSDT)
    interval: candle interval label (e.g., 1m, 4h, 1d)
    """
    symbol: str
    interval: str

    @property
    def stream_name(self) -> str:
        """Provider stream label, e.g. btcusdt@kline_1m."""
        return f"{self.symbol.lower()}@kline_{self.interval}"

    def __str__(self) -> str:
        return f"{self.symbol}:{self.interval}"


@dataclass(frozen=True)
class Candle:
    """
    Candle (OHLCV) for one fixed time window.

    start_ts: start of the candle window (UTC)
    o/h/l/c: open/high/low/close prices during the window
    v: summed volume during the window
    is_final: True once the window is closed; never flips back to False
    """
    start_ts: datetime
    o: float
    h: float
    l: float
    c: float
    v: float = 0.0
    is_final: bool = False

    def is_valid(self) -> bool:
        prices = (self.o, self.h, self.l, self.c)
        if not all(isinstance(p, (int, float)) and math.isfinite(p) and p > 0 for p in prices):
            return False
        if not isinstance(self.v, (int, float)) or not math.isfinite(self.v) or self.v < 0:
            return False
        return (
            self.h >= self.l
            and self.h >= max(self.o, self.c)
            and self.l <= min(self.o, self.c)
        )

    def same_prices(self, other: "Candle") -> bool:
        return (
            self.o == other.o
            and self.h == other.h
            and self.l == other.l
            and self.c == other.c
            and self.v == other.v
        )

    def to_dict(self) -> dict:
        return {
            "start_ts": self.start_ts.isoformat(),
            "open": self.o,
            "high": self.h,
            "low": self.l,
            "close": self.c,
            "volume": self.v,
            "is_final": self.is_final,
        }


@dataclass(frozen=True)
class StreamUpdate:
    """One normalized update flowing from transport/poller into the buffers."""
    key: StreamKey
    candle: Candle
    is_final: bool = False


@dataclass(frozen=True)
class MergeResult:
    """
    What a buffer merge did.

    action: appended | updated | ignored | invalid
    index: position of the touched candle after the merge (None when nothing changed)
    previous: candle that was replaced (updated only)
    evicted: number of candles dropped from the front to respect the cap
    """
    action: str
    index: Optional[int] = None
    previous: Optional[Candle] = None
    evicted: int = 0

    @property
    def mutated(self) -> bool:
        return self.action in ("appended", "updated")


@dataclass(frozen=True)
class BufferUpdate:
    """Payload of the buffer_updated event."""
    key: StreamKey
    buffer: List[Candle]
    last_update: Optional[StreamUpdate] = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Subscription:
    """Registry entry: what should be streaming."""
    key: StreamKey
    history_limit: int = 100
    subscribed_at: datetime = field(default_factory=utcnow)
