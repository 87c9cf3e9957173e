from typing import Optional

from candlefeed.config import Settings, get_settings
from candlefeed.providers.base import MarketDataProvider
from candlefeed.providers.binance import BinanceProvider


def get_provider(settings: Optional[Settings] = None) -> MarketDataProvider:
    """
    Provider loader / factory.

    Reads PROVIDER from config and returns an instance of the selected provider.
    This is the single place that knows about concrete providers.
    """
    settings = settings or get_settings()
    provider_name = settings.provider.strip().upper()

    if provider_name == "BINANCE":
        return BinanceProvider(
            base_url=settings.rest_base_url,
            timeout_seconds=settings.http_timeout_seconds,
        )

    raise ValueError(f"Unknown PROVIDER='{settings.provider}'. Expected: BINANCE")
