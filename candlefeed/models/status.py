from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class ConnectionStatus(BaseModel):
    """
    Transport snapshot.

    state:
      - DISCONNECTED / CONNECTING / CONNECTED / RECONNECTING: push transport lifecycle
      - POLLING_FALLBACK: push gave up, data comes from periodic REST pulls

    reconnect_attempts:
      failures since the last successful open (reset to 0 on open)

    url:
      endpoint used by the current (or last) connection attempt
    """

    state: str
    connected: bool
    polling: bool
    reconnect_attempts: int
    active_streams: int
    url: Optional[str] = None
    malformed_frames: int = 0
    poll_cycles: int = 0


class StreamQuality(BaseModel):
    """
    Per-stream data-quality counters.

    duplicates:     same window, identical OHLCV as what we already had
    out_of_order:   update for a window older than the newest buffered one
    price_changes:  close moved vs the previous value for the stream
    ignored:        too stale to place in the buffer
    invalid:        rejected before merge (NaN, <= 0, broken high/low)
    fetch_errors:   failed historical/poll requests
    audit:          last few fetch error messages
    """

    symbol: str
    interval: str
    updates: int = 0
    appended: int = 0
    replaced: int = 0
    duplicates: int = 0
    out_of_order: int = 0
    price_changes: int = 0
    ignored: int = 0
    invalid: int = 0
    fetch_errors: int = 0
    updates_per_second: float = 0.0
    last_update: Optional[str] = None
    audit: List[str] = []
