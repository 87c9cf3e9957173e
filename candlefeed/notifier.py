from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from candlefeed.events import CANDLE_UPDATE, EventEmitter
from candlefeed.models.market import StreamKey, StreamUpdate

log = logging.getLogger("notifier")


class DebouncedNotifier:
    """
    Coalesces bursts of updates into one candle_update per stream key.

    Every push re-arms the key's timer; when it fires, the latest pending
    update is emitted and the slot cleared. Intermediate updates inside the
    window are dropped, the last one always goes out.
    """

    def __init__(self, emitter: EventEmitter, delay_seconds: float = 0.15) -> None:
        self.emitter = emitter
        self.delay_seconds = delay_seconds
        self.emitted = 0
        self._pending: Dict[StreamKey, StreamUpdate] = {}
        self._timers: Dict[StreamKey, asyncio.TimerHandle] = {}

    def push(self, update: StreamUpdate) -> None:
        """Must be called from the engine's event loop."""
        key = update.key
        self._pending[key] = update

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.delay_seconds, self._fire, key)

    def _fire(self, key: StreamKey) -> None:
        self._timers.pop(key, None)
        update = self._pending.pop(key, None)
        if update is None:
            # Cancelled between scheduling and firing.
            return
        self.emitted += 1
        self.emitter.emit(CANDLE_UPDATE, update)

    def cancel(self, key: StreamKey) -> None:
        self._pending.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()

    def pending_keys(self) -> List[StreamKey]:
        return list(self._pending)
