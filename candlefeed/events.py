from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("events")

# Event names emitted by the streaming engine.
CONNECTED = "connected"
DISCONNECTED = "disconnected"
MAX_RECONNECT_ATTEMPTS_REACHED = "max_reconnect_attempts_reached"
STATE_CHANGED = "state_changed"
SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"
HISTORICAL_DATA_LOADED = "historical_data_loaded"
BUFFER_UPDATED = "buffer_updated"
CANDLE_UPDATE = "candle_update"

Listener = Callable[..., Any]


class EventEmitter:
    """
    Minimal synchronous event emitter.

    - listeners run in registration order
    - a listener that raises is logged; the remaining listeners still run
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def emit(self, event: str, *args: Any) -> int:
        """Returns how many listeners were called."""
        # Copy so listeners can detach themselves while we iterate.
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                log.exception("Listener failed event=%s listener=%r", event, listener)
        return len(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
