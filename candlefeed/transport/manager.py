from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

import websockets

from candlefeed.config import Settings
from candlefeed.errors import MalformedFrameError
from candlefeed.events import (
    CONNECTED,
    DISCONNECTED,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    STATE_CHANGED,
    EventEmitter,
)
from candlefeed.models.market import StreamKey, StreamUpdate
from candlefeed.providers.base import MarketDataProvider

log = logging.getLogger("transport")

Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    POLLING_FALLBACK = "POLLING_FALLBACK"


async def websocket_connector(url: str) -> Any:
    # Heartbeat is driven by TransportManager, not by the library.
    return await websockets.connect(url, ping_interval=None)


def backoff_delay(attempt: int, base_seconds: float, multiplier: float) -> float:
    """Delay before reconnect attempt n (1-based): base * multiplier^(n-1)."""
    return base_seconds * multiplier ** (attempt - 1)


class TransportManager:
    """
    Owns the push connection lifecycle.

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED on close/error, then RECONNECTING while attempts remain
    POLLING_FALLBACK once attempts are exhausted (or the very first connect times out);
    it stays there until retry_push() or close().

    The registry is read, never written: it says which streams to (re)subscribe.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        registry: Mapping[StreamKey, Any],
        on_update: Callable[[StreamUpdate], Any],
        emitter: EventEmitter,
        settings: Settings,
        poller: Any = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.on_update = on_update
        self.emitter = emitter
        self.settings = settings
        self.poller = poller
        self._connector = connector or websocket_connector

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.malformed_frames = 0
        self.heartbeats = 0
        self.missed_heartbeats = 0
        self.url: Optional[str] = None

        self._ws: Any = None
        self._conn_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._first_attempt = True
        self._closing = False
        self._request_id = 0

    # -------------------------
    # State
    # -------------------------
    def _set_state(self, new: ConnectionState) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        log.info("Transport state %s -> %s", old.value, new.value)
        self.emitter.emit(STATE_CHANGED, old, new)

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _next_url(self) -> str:
        urls = self.settings.ws_urls
        return urls[self.reconnect_attempts % len(urls)]

    # -------------------------
    # Connect / reconnect
    # -------------------------
    def connect(self) -> None:
        """
        Start a connection attempt.
        No-op while connecting, connected, waiting on a scheduled reconnect, or polling.
        """
        if self.state is not ConnectionState.DISCONNECTED:
            return
        self._start_attempt()

    def _start_attempt(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._conn_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        url = self._next_url()
        self.url = url
        first = self._first_attempt
        self._first_attempt = False

        try:
            ws = await asyncio.wait_for(
                self._connector(url), timeout=self.settings.connect_timeout_seconds
            )
        except asyncio.TimeoutError:
            log.warning("WS connect timeout url=%s after %.1fs", url, self.settings.connect_timeout_seconds)
            if first:
                self._enter_fallback("initial connect timed out")
            else:
                self._handle_failure(was_open=False)
            return
        except Exception as e:
            log.warning("WS connect failed url=%s error=%s", url, e)
            self._handle_failure(was_open=False)
            return

        self._ws = ws
        await self._on_open()

        try:
            async for raw in ws:
                self._handle_frame(raw)
            log.warning("WS closed url=%s", url)
        except Exception as e:
            log.warning("WS error url=%s error=%s", url, e)

        if not self._closing:
            await self._close_socket(ws)
        self._handle_failure(was_open=True)

    async def _on_open(self) -> None:
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        log.info("WS connected url=%s", self.url)

        if self.poller is not None:
            self.poller.stop()

        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat())

        keys = list(self.registry)
        if keys:
            await self._send(self.provider.subscribe_message(keys, self._next_request_id()))
            log.info("WS resubscribed streams=%s", [str(k) for k in keys])

        self.emitter.emit(CONNECTED)

    def _handle_failure(self, was_open: bool) -> None:
        if self._closing:
            return

        self._stop_heartbeat()
        self._ws = None
        self._conn_task = None
        self._set_state(ConnectionState.DISCONNECTED)
        if was_open:
            self.emitter.emit(DISCONNECTED)

        if self.reconnect_attempts < self.settings.max_reconnect_attempts:
            self.reconnect_attempts += 1
            delay = backoff_delay(
                self.reconnect_attempts,
                self.settings.reconnect_base_delay_seconds,
                self.settings.reconnect_backoff_multiplier,
            )
            self._set_state(ConnectionState.RECONNECTING)
            log.info(
                "WS reconnect in %.2fs (attempt %d/%d)",
                delay,
                self.reconnect_attempts,
                self.settings.max_reconnect_attempts,
            )
            self._schedule_reconnect(delay)
            return

        log.error("WS max reconnect attempts reached (%d)", self.settings.max_reconnect_attempts)
        self.emitter.emit(MAX_RECONNECT_ATTEMPTS_REACHED)
        self._enter_fallback("max reconnect attempts reached")

    def _schedule_reconnect(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self.state is not ConnectionState.RECONNECTING:
            return
        self._start_attempt()

    def _enter_fallback(self, reason: str) -> None:
        self._cancel_reconnect()
        self._set_state(ConnectionState.POLLING_FALLBACK)
        log.warning("Switching to polling fallback: %s", reason)
        if self.poller is not None:
            self.poller.start()

    def retry_push(self) -> None:
        """
        Leave polling fallback and try the push transport again.
        The poller keeps running until a socket actually opens.
        """
        if self.state is not ConnectionState.POLLING_FALLBACK:
            return
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.DISCONNECTED)
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # -------------------------
    # Heartbeat
    # -------------------------
    async def _heartbeat(self) -> None:
        """
        Ping every heartbeat_seconds and wait for the pong.
        No pong within heartbeat_timeout_seconds: close the socket so the reader exits
        and the normal failure path (reconnect / fallback) runs.
        """
        while True:
            await asyncio.sleep(self.settings.heartbeat_seconds)
            ws = self._ws
            if ws is None or self.state is not ConnectionState.CONNECTED:
                return
            try:
                pong = await ws.ping()
                await asyncio.wait_for(pong, timeout=self.settings.heartbeat_timeout_seconds)
                self.heartbeats += 1
            except Exception as e:
                self.missed_heartbeats += 1
                log.warning("WS heartbeat failed url=%s error=%r, closing socket", self.url, e)
                await self._close_socket(ws)
                return

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _close_socket(self, ws: Any) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=self.settings.connect_timeout_seconds)
        except Exception as e:
            log.warning("WS close failed url=%s error=%r", self.url, e)

    # -------------------------
    # Directives + frames
    # -------------------------
    async def _send(self, message: str) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(message)
            return True
        except Exception as e:
            log.warning("WS send failed error=%s", e)
            return False

    async def subscribe(self, key: StreamKey) -> None:
        """Send SUBSCRIBE if connected; otherwise make sure a connection is coming."""
        if self.is_connected:
            await self._send(self.provider.subscribe_message([key], self._next_request_id()))
            log.info("WS subscribed stream=%s", key)
            return
        self.connect()

    async def unsubscribe(self, key: StreamKey) -> None:
        if self.is_connected:
            await self._send(self.provider.unsubscribe_message([key], self._next_request_id()))
            log.info("WS unsubscribed stream=%s", key)

    def _handle_frame(self, raw: Any) -> None:
        try:
            update = self.provider.decode_message(raw)
        except MalformedFrameError as e:
            self.malformed_frames += 1
            log.debug("Dropping malformed frame error=%s", e)
            return
        except Exception as e:
            # A codec bug must not take the connection down with it.
            self.malformed_frames += 1
            log.warning("Dropping undecodable frame error=%r", e)
            return

        if update is None:
            return

        try:
            self.on_update(update)
        except Exception:
            log.exception("Update handler failed stream=%s", update.key)

    # -------------------------
    # Shutdown
    # -------------------------
    async def close(self) -> None:
        """Close the socket and cancel every timer/task. No reconnect follows."""
        was_connected = self.is_connected
        self._closing = True
        try:
            self._cancel_reconnect()

            tasks = [t for t in (self._conn_task, self._heartbeat_task) if t is not None]
            self._conn_task = None
            self._heartbeat_task = None
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

            ws = self._ws
            self._ws = None
            if ws is not None:
                await self._close_socket(ws)

            if self.poller is not None:
                self.poller.stop()

            self.reconnect_attempts = 0
            self._first_attempt = True
            self._set_state(ConnectionState.DISCONNECTED)
            if was_connected:
                self.emitter.emit(DISCONNECTED)
        finally:
            self._closing = False
