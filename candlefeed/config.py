# candlefeed/config.py
import os
from dataclasses import dataclass, field
from typing import List, Tuple

from dotenv import load_dotenv

# Loads variables from a local .env file into environment variables (dev only).
load_dotenv()

DEFAULT_WS_URLS = [
    "wss://stream.binance.com:9443/ws",
    "wss://stream.binance.com/ws",
    "wss://data-stream.binance.vision/ws",
]


@dataclass(frozen=True)
class Settings:
    # App config
    app_env: str = "local"
    log_level: str = "INFO"
    provider: str = "BINANCE"
    default_streams: List[str] = field(default_factory=list)

    # Provider config
    ws_urls: List[str] = field(default_factory=lambda: list(DEFAULT_WS_URLS))
    rest_base_url: str = "https://api.binance.com/api/v3"
    http_timeout_seconds: float = 10.0

    # Transport
    connect_timeout_seconds: float = 10.0
    heartbeat_seconds: float = 30.0
    heartbeat_timeout_seconds: float = 10.0
    max_reconnect_attempts: int = 8
    reconnect_base_delay_seconds: float = 2.0
    reconnect_backoff_multiplier: float = 1.5

    # Polling fallback
    poll_interval_seconds: float = 3.0
    poll_candles_limit: int = 3
    finalize_grace_seconds: float = 30.0

    # Buffers + notifications
    debounce_seconds: float = 0.15
    max_candles: int = 1000
    history_limit: int = 100
    search_depth: int = 10

    def parsed_default_streams(self) -> List[Tuple[str, str]]:
        """DEFAULT_STREAMS entries look like 'BTCUSDT:1m'."""
        out: List[Tuple[str, str]] = []
        for item in self.default_streams:
            symbol, _, interval = item.partition(":")
            if symbol.strip():
                out.append((symbol.strip().upper(), interval.strip() or "1m"))
        return out


def _csv(name: str, default: str) -> List[str]:
    return [s.strip() for s in os.getenv(name, default).split(",") if s.strip()]


def get_settings() -> Settings:
    """
    Reads env vars and returns a Settings object.
    """
    return Settings(
        app_env=os.getenv("APP_ENV", "local"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        provider=os.getenv("PROVIDER", "BINANCE"),
        default_streams=_csv("DEFAULT_STREAMS", "BTCUSDT:1m"),
        ws_urls=_csv("WS_URLS", ",".join(DEFAULT_WS_URLS)),
        rest_base_url=os.getenv("REST_BASE_URL", "https://api.binance.com/api/v3").rstrip("/"),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")),
        connect_timeout_seconds=float(os.getenv("CONNECT_TIMEOUT_SECONDS", "10")),
        heartbeat_seconds=float(os.getenv("HEARTBEAT_SECONDS", "30")),
        heartbeat_timeout_seconds=float(os.getenv("HEARTBEAT_TIMEOUT_SECONDS", "10")),
        max_reconnect_attempts=int(os.getenv("MAX_RECONNECT_ATTEMPTS", "8")),
        reconnect_base_delay_seconds=float(os.getenv("RECONNECT_BASE_DELAY_SECONDS", "2")),
        reconnect_backoff_multiplier=float(os.getenv("RECONNECT_BACKOFF_MULTIPLIER", "1.5")),
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "3")),
        poll_candles_limit=int(os.getenv("POLL_CANDLES_LIMIT", "3")),
        finalize_grace_seconds=float(os.getenv("FINALIZE_GRACE_SECONDS", "30")),
        debounce_seconds=float(os.getenv("DEBOUNCE_MS", "150")) / 1000.0,
        max_candles=int(os.getenv("MAX_CANDLES", "1000")),
        history_limit=int(os.getenv("HISTORY_LIMIT", "100")),
        search_depth=int(os.getenv("SEARCH_DEPTH", "10")),
    )
