from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from candlefeed.candles.intervals import is_likely_final
from candlefeed.candles.quality import DataQualityTracker
from candlefeed.config import Settings
from candlefeed.models.market import StreamKey, StreamUpdate, utcnow
from candlefeed.providers.base import MarketDataProvider

log = logging.getLogger("poller")


class PollingFallbackPoller:
    """
    Pull-based stand-in for the push transport.

    Every poll_interval_seconds, for every registry entry:
    - fetch the last poll_candles_limit candles via REST
    - mark candles final once their window ended more than finalize_grace_seconds ago
    - feed them through the same merge path as push updates

    One failing stream never stops the cycle for the others.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        registry: Mapping[StreamKey, Any],
        on_update: Callable[[StreamUpdate], Any],
        settings: Settings,
        quality: Optional[DataQualityTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.on_update = on_update
        self.settings = settings
        self.quality = quality
        self.clock = clock

        self.cycles = 0
        self.fetch_errors = 0
        self.update_errors = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        log.warning(
            "Polling fallback started interval=%.1fs streams=%d",
            self.settings.poll_interval_seconds,
            len(self.registry),
        )
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            log.info("Polling fallback stopped after cycles=%d", self.cycles)

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def poll_once(self) -> int:
        """Run one cycle. Returns how many updates were fed."""
        fed = 0
        limit = self.settings.poll_candles_limit

        for key in list(self.registry):
            if key not in self.registry:
                continue

            try:
                candles = await self.provider.fetch_candles(key.symbol, key.interval, limit)
            except Exception as e:
                # Keep the cycle alive even if one stream fails, but log + count it.
                self.fetch_errors += 1
                if self.quality is not None:
                    self.quality.record_fetch_error(key, e)
                log.warning("Poll failed stream=%s error=%s", key, repr(e))
                continue

            # Unsubscribed while the request was in flight.
            if key not in self.registry:
                continue

            now = self.clock()
            for candle in candles:
                try:
                    final = candle.is_final or is_likely_final(
                        candle.start_ts, key.interval, now, self.settings.finalize_grace_seconds
                    )
                    self.on_update(StreamUpdate(key=key, candle=replace(candle, is_final=final), is_final=final))
                except Exception:
                    self.update_errors += 1
                    log.exception("Poll update failed stream=%s start_ts=%s", key, candle.start_ts)
                    continue
                fed += 1

        self.cycles += 1
        log.debug("Poll cycle=%d fed=%d", self.cycles, fed)
        return fed
