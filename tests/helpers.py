import asyncio
import json
from datetime import datetime, timedelta, timezone

from candlefeed.config import Settings
from candlefeed.models.market import Candle, StreamKey, StreamUpdate
from candlefeed.providers.base import MarketDataProvider
from candlefeed.providers.binance import decode_kline_frame, encode_directive

T0 = datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)


def fast_settings(**overrides) -> Settings:
    """Settings with timers shrunk so tests run in milliseconds."""
    values = dict(
        ws_urls=["ws://primary", "ws://secondary"],
        connect_timeout_seconds=0.5,
        heartbeat_seconds=0.02,
        heartbeat_timeout_seconds=0.05,
        max_reconnect_attempts=8,
        reconnect_base_delay_seconds=0.001,
        reconnect_backoff_multiplier=1.5,
        poll_interval_seconds=0.01,
        poll_candles_limit=3,
        debounce_seconds=0.03,
        max_candles=1000,
        history_limit=50,
        search_depth=10,
    )
    values.update(overrides)
    return Settings(**values)


def candle(start: datetime, close: float = 100.0, is_final: bool = False, volume: float = 1.0) -> Candle:
    return Candle(
        start_ts=start,
        o=close,
        h=close + 1,
        l=close - 1,
        c=close,
        v=volume,
        is_final=is_final,
    )


def update(key: StreamKey, start: datetime, close: float = 100.0, is_final: bool = False) -> StreamUpdate:
    return StreamUpdate(key=key, candle=candle(start, close, is_final), is_final=is_final)


def kline_frame(symbol: str, interval: str, start: datetime, close: float, is_final: bool = False) -> str:
    return json.dumps(
        {
            "e": "kline",
            "s": symbol,
            "k": {
                "t": int(start.timestamp() * 1000),
                "s": symbol,
                "i": interval,
                "o": str(close),
                "h": str(close + 1),
                "l": str(close - 1),
                "c": str(close),
                "v": "12.5",
                "x": is_final,
            },
        }
    )


class FakeProvider(MarketDataProvider):
    """Serves canned history; uses the real Binance wire codec."""

    def __init__(self, history=None, fail_with=None):
        self.history = history or {}
        self.fail_with = fail_with
        self.fail_symbols = set()
        self.fetch_calls = []

    async def fetch_candles(self, symbol, interval, limit):
        self.fetch_calls.append((symbol, interval, limit))
        if self.fail_with is not None or symbol in self.fail_symbols:
            raise self.fail_with or ConnectionError(f"fetch failed for {symbol}")
        return list(self.history.get((symbol, interval), []))[-limit:]

    def subscribe_message(self, keys, request_id):
        return encode_directive("SUBSCRIBE", keys, request_id)

    def unsubscribe_message(self, keys, request_id):
        return encode_directive("UNSUBSCRIBE", keys, request_id)

    def decode_message(self, raw):
        return decode_kline_frame(raw)


_DROP = object()


class FakeWebSocket:
    def __init__(self, answer_pings=True):
        self.sent = []
        self.pings = 0
        self.closed = False
        self.answer_pings = answer_pings
        self._inbox = asyncio.Queue()

    async def send(self, message):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(message))

    async def ping(self):
        """Returns the pong waiter, like websockets does. A half-open peer never answers."""
        self.pings += 1
        pong = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            pong.set_result(0.0)
        return pong

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def feed(self, raw):
        self._inbox.put_nowait(raw)

    def drop(self):
        """Simulate an abnormal close from the server side."""
        self._inbox.put_nowait(_DROP)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        if item is _DROP:
            raise ConnectionError("connection dropped")
        return item


class FakeConnector:
    """Fails the first `fail_times` attempts, then hands out FakeWebSockets."""

    def __init__(self, fail_times=0, hang=False, answer_pings=True):
        self.fail_times = fail_times
        self.hang = hang
        self.answer_pings = answer_pings
        self.urls = []
        self.sockets = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.hang:
            await asyncio.sleep(3600)
        if len(self.urls) <= self.fail_times:
            raise OSError("connection refused")
        ws = FakeWebSocket(answer_pings=self.answer_pings)
        self.sockets.append(ws)
        return ws

    @property
    def last(self):
        return self.sockets[-1]


class StubPoller:
    def __init__(self):
        self.starts = 0
        self.stops = 0

    def start(self):
        self.starts += 1

    def stop(self):
        self.stops += 1


async def wait_until(predicate, timeout=2.0, interval=0.005):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def minutes(n: int) -> timedelta:
    return timedelta(minutes=n)
