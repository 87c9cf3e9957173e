from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from candlefeed.candles.intervals import is_known_interval, is_likely_final
from candlefeed.candles.quality import DataQualityTracker
from candlefeed.candles.store import CandleStore
from candlefeed.config import Settings, get_settings
from candlefeed.errors import HistoricalLoadError
from candlefeed.events import (
    BUFFER_UPDATED,
    HISTORICAL_DATA_LOADED,
    SUBSCRIBED,
    UNSUBSCRIBED,
    EventEmitter,
    Listener,
)
from candlefeed.jobs.poller import PollingFallbackPoller
from candlefeed.models.market import (
    BufferUpdate,
    Candle,
    MergeResult,
    StreamKey,
    StreamUpdate,
    Subscription,
    utcnow,
)
from candlefeed.models.status import ConnectionStatus, StreamQuality
from candlefeed.notifier import DebouncedNotifier
from candlefeed.providers.base import MarketDataProvider
from candlefeed.transport.manager import ConnectionState, Connector, TransportManager

log = logging.getLogger("engine")


def make_key(symbol: str, interval: str) -> StreamKey:
    return StreamKey(symbol=symbol.strip().upper(), interval=interval.strip())


class StreamingEngine:
    """
    Live candle streaming for a set of (symbol, interval) subscriptions.

    Owns the subscription registry, the candle buffers and every timer.
    All mutation happens on the event loop the engine runs on:
    transport frames and poll results both go through ingest().

    Events (see candlefeed.events): connected, disconnected,
    max_reconnect_attempts_reached, state_changed, subscribed, unsubscribed,
    historical_data_loaded, buffer_updated, candle_update (debounced).
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        settings: Optional[Settings] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider

        self._registry: Dict[StreamKey, Subscription] = {}

        self.emitter = EventEmitter()
        self.store = CandleStore(
            max_candles=self.settings.max_candles,
            search_depth=self.settings.search_depth,
        )
        self.quality = DataQualityTracker()
        self.notifier = DebouncedNotifier(self.emitter, delay_seconds=self.settings.debounce_seconds)
        self.poller = PollingFallbackPoller(
            provider=provider,
            registry=self._registry,
            on_update=self.ingest,
            settings=self.settings,
            quality=self.quality,
        )
        self.transport = TransportManager(
            provider=provider,
            registry=self._registry,
            on_update=self.ingest,
            emitter=self.emitter,
            settings=self.settings,
            poller=self.poller,
            connector=connector,
        )

    # -------------------------
    # Events
    # -------------------------
    def on(self, event: str, listener: Listener) -> None:
        self.emitter.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self.emitter.off(event, listener)

    # -------------------------
    # Subscriptions
    # -------------------------
    async def subscribe(self, symbol: str, interval: str, history_limit: Optional[int] = None) -> bool:
        """
        Start streaming (symbol, interval).

        Loads history first, then asks the transport to subscribe (connecting if needed).
        Returns False if the stream was already active.
        Raises HistoricalLoadError if the initial load fails; nothing stays registered then.
        """
        key = make_key(symbol, interval)
        if key in self._registry:
            return False

        if not is_known_interval(key.interval):
            log.warning("Subscribing with unknown interval=%r (windows fall back to 1m)", key.interval)

        limit = history_limit or self.settings.history_limit
        self._registry[key] = Subscription(key=key, history_limit=limit)

        try:
            candles = await self.provider.fetch_candles(key.symbol, key.interval, limit)
        except Exception as e:
            self._registry.pop(key, None)
            self.quality.record_fetch_error(key, e)
            log.error("Historical load failed stream=%s error=%s", key, repr(e))
            raise HistoricalLoadError(key.symbol, key.interval, repr(e)) from e

        if key not in self._registry:
            # Unsubscribed while the history request was in flight.
            return False

        self._load_history(key, candles)
        buffer = self.store.get_buffer(key)
        log.info("Loaded history stream=%s candles=%d", key, len(buffer))
        self.emitter.emit(HISTORICAL_DATA_LOADED, key, buffer)
        self.emitter.emit(BUFFER_UPDATED, BufferUpdate(key=key, buffer=buffer))

        await self.transport.subscribe(key)
        self.emitter.emit(SUBSCRIBED, key)
        return True

    def _load_history(self, key: StreamKey, candles: List[Candle]) -> None:
        now = utcnow()
        grace = self.settings.finalize_grace_seconds
        marked = [
            replace(c, is_final=c.is_final or is_likely_final(c.start_ts, key.interval, now, grace))
            for c in candles
        ]

        # Live updates that raced the history request are merged back on top.
        raced = self.store.get_buffer(key)
        self.store.load_history(key, marked)
        for candle in raced:
            self.store.merge(StreamUpdate(key=key, candle=candle, is_final=candle.is_final))

    async def unsubscribe(self, symbol: str, interval: str) -> bool:
        """Stop streaming (symbol, interval). Unknown keys are a no-op."""
        key = make_key(symbol, interval)
        if self._registry.pop(key, None) is None:
            return False

        self.notifier.cancel(key)
        self.store.drop(key)
        await self.transport.unsubscribe(key)
        log.info("Unsubscribed stream=%s", key)
        self.emitter.emit(UNSUBSCRIBED, key)
        return True

    def active_streams(self) -> List[StreamKey]:
        return list(self._registry)

    def subscriptions(self) -> List[Subscription]:
        """Registry entries in subscription order."""
        return list(self._registry.values())

    def is_subscribed(self, symbol: str, interval: str) -> bool:
        return make_key(symbol, interval) in self._registry

    # -------------------------
    # Merge path (push + poll)
    # -------------------------
    def ingest(self, update: StreamUpdate) -> Optional[MergeResult]:
        """
        Merge one update into its buffer, record quality, notify.
        Updates for streams that are not subscribed are dropped.
        """
        key = update.key
        if key not in self._registry:
            log.debug("Dropping update for inactive stream=%s", key)
            return None

        latest = self.store.get_latest(key)
        result = self.store.merge(update)
        self.quality.record(update, result, newest_before=latest.start_ts if latest else None)

        if not result.mutated:
            if result.action == "invalid":
                log.debug("Rejected invalid candle stream=%s candle=%s", key, update.candle)
            return result

        buffer = self.store.get_buffer(key)
        merged = buffer[result.index]
        applied = StreamUpdate(key=key, candle=merged, is_final=merged.is_final)

        self.emitter.emit(BUFFER_UPDATED, BufferUpdate(key=key, buffer=buffer, last_update=applied))
        self.notifier.push(applied)
        return result

    # -------------------------
    # Reads
    # -------------------------
    def get_buffer(self, symbol: str, interval: str) -> List[Candle]:
        return self.store.get_buffer(make_key(symbol, interval))

    def get_latest_candle(self, symbol: str, interval: str) -> Optional[Candle]:
        return self.store.get_latest(make_key(symbol, interval))

    def get_latest_price(self, symbol: str, interval: str) -> Optional[float]:
        latest = self.get_latest_candle(symbol, interval)
        return latest.c if latest else None

    def get_quality(self, symbol: str, interval: str) -> StreamQuality:
        return self.quality.snapshot(make_key(symbol, interval))

    @property
    def state(self) -> ConnectionState:
        return self.transport.state

    def get_connection_status(self) -> ConnectionStatus:
        transport = self.transport
        return ConnectionStatus(
            state=transport.state.value,
            connected=transport.is_connected,
            polling=self.poller.running,
            reconnect_attempts=transport.reconnect_attempts,
            active_streams=len(self._registry),
            url=transport.url,
            malformed_frames=transport.malformed_frames,
            poll_cycles=self.poller.cycles,
        )

    # -------------------------
    # Lifecycle
    # -------------------------
    def reconnect(self) -> None:
        """Try the push transport again after falling back to polling."""
        self.transport.retry_push()

    async def shutdown(self) -> None:
        """Close the transport, cancel every timer, forget all streams and buffers."""
        await self.transport.close()
        await self.poller.aclose()
        self.notifier.cancel_all()
        self._registry.clear()
        self.store.clear()
        log.info("Streaming engine shut down")
