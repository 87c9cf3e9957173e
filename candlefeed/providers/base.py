from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Union

from candlefeed.models.market import Candle, StreamKey, StreamUpdate


class MarketDataProvider(ABC):
    """
    Provider contract (interface).

    Any provider must implement:
    - fetch_candles(): historical candles via REST (ascending by time)
    - subscribe_message() / unsubscribe_message(): push directives for the WS
    - decode_message(): one raw WS frame -> StreamUpdate (or None for control frames)
    """

    @abstractmethod
    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        raise NotImplementedError

    @abstractmethod
    def subscribe_message(self, keys: Iterable[StreamKey], request_id: int) -> str:
        raise NotImplementedError

    @abstractmethod
    def unsubscribe_message(self, keys: Iterable[StreamKey], request_id: int) -> str:
        raise NotImplementedError

    @abstractmethod
    def decode_message(self, raw: Union[str, bytes]) -> Optional[StreamUpdate]:
        """Raise MalformedFrameError for frames that can't be understood."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
