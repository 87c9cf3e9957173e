from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Union

import httpx

from candlefeed.errors import MalformedFrameError
from candlefeed.models.market import Candle, StreamKey, StreamUpdate
from candlefeed.providers.base import MarketDataProvider

log = logging.getLogger("binance_provider")


def _ms_to_dt(ms: Any) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000.0, tz=timezone.utc)


def encode_directive(method: str, keys: Iterable[StreamKey], request_id: int) -> str:
    """{"method": "SUBSCRIBE", "params": ["btcusdt@kline_1m"], "id": 1}"""
    return json.dumps({"method": method, "params": [k.stream_name for k in keys], "id": request_id})


def decode_kline_frame(raw: Union[str, bytes]) -> Optional[StreamUpdate]:
    """
    One WS frame -> StreamUpdate.
    Returns None for frames we understand but don't care about (acks, other events).
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedFrameError(f"not JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrameError(f"unexpected frame type={type(data).__name__}")

    # Combined-stream envelope
    if "stream" in data and isinstance(data.get("data"), dict):
        data = data["data"]

    # Subscription acks: {"result": null, "id": 1}
    if "result" in data and "id" in data:
        return None

    if data.get("e") != "kline":
        return None

    k = data.get("k")
    if not isinstance(k, dict):
        raise MalformedFrameError("kline frame without 'k'")

    try:
        key = StreamKey(symbol=str(k["s"]).upper(), interval=str(k["i"]))
        is_final = bool(k.get("x", False))
        candle = Candle(
            start_ts=_ms_to_dt(k["t"]),
            o=float(k["o"]),
            h=float(k["h"]),
            l=float(k["l"]),
            c=float(k["c"]),
            v=float(k.get("v", 0.0)),
            is_final=is_final,
        )
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
        # OverflowError/OSError: timestamps outside the platform range.
        raise MalformedFrameError(f"bad kline payload: {e!r}") from e

    return StreamUpdate(key=key, candle=candle, is_final=is_final)


class BinanceProvider(MarketDataProvider):
    """
    Binance provider (REST + WS).

    REST:
    - GET /klines for history and polling fallback

    WS:
    - one socket, streams added/removed with SUBSCRIBE / UNSUBSCRIBE
    - kline frames arrive raw ({"e": "kline", ...}) or wrapped ({"stream": ..., "data": {...}})
    """

    def __init__(
        self,
        base_url: str = "https://api.binance.com/api/v3",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------
    # REST
    # -------------------------
    async def fetch_candles(self, symbol: str, interval: str, limit: int = 100) -> List[Candle]:
        """
        Binance klines endpoint:
          GET {base_url}/klines?symbol=BTCUSDT&interval=1m&limit=100

        Rows are arrays: [openTime, open, high, low, close, volume, closeTime, ...]
        """
        url = f"{self.base_url}/klines"
        params = {"symbol": symbol.upper(), "interval": interval, "limit": str(limit)}

        resp = await self._client.get(url, params=params)
        resp.raise_for_status()

        data = resp.json()
        if not isinstance(data, list):
            raise ValueError(f"Unexpected klines payload type symbol={symbol} type={type(data).__name__}")

        out: List[Candle] = []
        skipped = 0
        for row in data:
            if not isinstance(row, list) or len(row) < 6:
                skipped += 1
                continue
            try:
                out.append(
                    Candle(
                        start_ts=_ms_to_dt(row[0]),
                        o=float(row[1]),
                        h=float(row[2]),
                        l=float(row[3]),
                        c=float(row[4]),
                        v=float(row[5]),
                    )
                )
            except (TypeError, ValueError, OverflowError, OSError):
                skipped += 1
                continue

        if skipped:
            log.debug("Skipped unparseable kline rows symbol=%s interval=%s count=%d", symbol, interval, skipped)

        out.sort(key=lambda c: c.start_ts)
        if limit and len(out) > limit:
            out = out[-limit:]
        return out

    # -------------------------
    # WS directives + frames
    # -------------------------
    def subscribe_message(self, keys: Iterable[StreamKey], request_id: int) -> str:
        return encode_directive("SUBSCRIBE", keys, request_id)

    def unsubscribe_message(self, keys: Iterable[StreamKey], request_id: int) -> str:
        return encode_directive("UNSUBSCRIBE", keys, request_id)

    def decode_message(self, raw: Union[str, bytes]) -> Optional[StreamUpdate]:
        return decode_kline_frame(raw)
