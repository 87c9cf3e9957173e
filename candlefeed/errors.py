from __future__ import annotations


class CandleFeedError(Exception):
    """Base class for errors raised to callers of the streaming engine."""


class HistoricalLoadError(CandleFeedError):
    """Initial history for a new subscription could not be loaded."""

    def __init__(self, symbol: str, interval: str, reason: str) -> None:
        super().__init__(f"historical load failed for {symbol} {interval}: {reason}")
        self.symbol = symbol
        self.interval = interval
        self.reason = reason


class MalformedFrameError(CandleFeedError, ValueError):
    """A push frame could not be decoded into an update."""
