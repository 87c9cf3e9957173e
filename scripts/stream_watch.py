import argparse
import asyncio
import os
import sys

# Add repo root to Python import path so `import candlefeed...` works
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from dotenv import load_dotenv

load_dotenv()

from candlefeed.config import get_settings
from candlefeed.engine import StreamingEngine
from candlefeed.events import CANDLE_UPDATE, MAX_RECONNECT_ATTEMPTS_REACHED, STATE_CHANGED
from candlefeed.providers.loader import get_provider


async def main(symbol: str, interval: str, seconds: int) -> None:
    """
    Subscribes one stream and prints every debounced candle update
    (plus transport state changes) for `seconds` seconds.
    """
    settings = get_settings()
    provider = get_provider(settings)
    engine = StreamingEngine(provider, settings=settings)

    def on_candle(update):
        c = update.candle
        flag = "FINAL" if update.is_final else "live"
        print(
            f"[{flag}] {update.key} {c.start_ts.isoformat()} "
            f"O={c.o} H={c.h} L={c.l} C={c.c} V={c.v}"
        )

    engine.on(CANDLE_UPDATE, on_candle)
    engine.on(STATE_CHANGED, lambda old, new: print(f"STATE {old.value} -> {new.value}"))
    engine.on(MAX_RECONNECT_ATTEMPTS_REACHED, lambda: print("Push gave up, polling from now on"))

    try:
        await engine.subscribe(symbol, interval)
        print(f"Subscribed to {symbol} {interval}: {len(engine.get_buffer(symbol, interval))} candles of history")
        await asyncio.sleep(seconds)
    finally:
        print("Quality:", engine.get_quality(symbol, interval).model_dump())
        await engine.shutdown()
        await provider.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Watch one live candle stream")
    parser.add_argument("--symbol", default="BTCUSDT")
    parser.add_argument("--interval", default="1m")
    parser.add_argument("--seconds", type=int, default=60)
    args = parser.parse_args()

    asyncio.run(main(args.symbol.upper(), args.interval, args.seconds))
