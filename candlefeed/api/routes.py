from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from candlefeed.candles.intervals import is_known_interval
from candlefeed.engine import StreamingEngine
from candlefeed.errors import HistoricalLoadError
from candlefeed.models.status import ConnectionStatus, StreamQuality

router = APIRouter()


def _engine(request: Request) -> StreamingEngine:
    return request.app.state.engine


def _check_interval(interval: str) -> None:
    if not is_known_interval(interval):
        raise HTTPException(status_code=422, detail=f"Unknown interval '{interval}'")


@router.get("/status", response_model=ConnectionStatus)
def status(request: Request):
    return _engine(request).get_connection_status()


@router.get("/streams")
def streams(request: Request):
    """Active subscriptions + transport snapshot."""
    engine = _engine(request)
    return {
        "streams": [
            {
                "symbol": sub.key.symbol,
                "interval": sub.key.interval,
                "history_limit": sub.history_limit,
                "subscribed_at": sub.subscribed_at.isoformat(),
                "latest_price": engine.get_latest_price(sub.key.symbol, sub.key.interval),
            }
            for sub in engine.subscriptions()
        ],
        "status": engine.get_connection_status().model_dump(),
    }


@router.post("/streams/subscribe")
async def subscribe(
    request: Request,
    symbol: str = Query(..., description="Market symbol, e.g., BTCUSDT"),
    interval: str = Query("1m", description="Candle interval, e.g., 1m, 4h, 1d"),
):
    """
    Loads history for the stream, then starts live updates.
    502 if the history request fails (nothing is registered in that case).
    """
    _check_interval(interval)
    engine = _engine(request)
    try:
        created = await engine.subscribe(symbol, interval)
    except HistoricalLoadError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e

    return {
        "ok": True,
        "created": created,
        "symbol": symbol.upper(),
        "interval": interval,
        "candles": len(engine.get_buffer(symbol, interval)),
    }


@router.post("/streams/unsubscribe")
async def unsubscribe(
    request: Request,
    symbol: str = Query(..., description="Market symbol, e.g., BTCUSDT"),
    interval: str = Query("1m", description="Candle interval"),
):
    removed = await _engine(request).unsubscribe(symbol, interval)
    return {"ok": True, "removed": removed}


@router.post("/streams/reconnect")
def reconnect(request: Request):
    """Leave polling fallback and retry the push connection."""
    engine = _engine(request)
    engine.reconnect()
    return {"ok": True, "state": engine.state.value}


@router.get("/candles")
def candles(
    request: Request,
    symbol: str = Query(..., description="Market symbol, e.g., BTCUSDT"),
    interval: str = Query("1m", description="Candle interval"),
    limit: int = Query(100, ge=1, le=5000, description="How many of the most recent candles"),
):
    buffer = _engine(request).get_buffer(symbol, interval)[-limit:]
    return {
        "symbol": symbol.upper(),
        "interval": interval,
        "count": len(buffer),
        "candles": [c.to_dict() for c in buffer],
    }


@router.get("/price")
def price(
    request: Request,
    symbol: str = Query(..., description="Market symbol, e.g., BTCUSDT"),
    interval: str = Query("1m", description="Candle interval"),
):
    return {
        "symbol": symbol.upper(),
        "interval": interval,
        "price": _engine(request).get_latest_price(symbol, interval),
    }


@router.get("/quality", response_model=StreamQuality)
def quality(
    request: Request,
    symbol: str = Query(..., description="Market symbol, e.g., BTCUSDT"),
    interval: str = Query("1m", description="Candle interval"),
):
    return _engine(request).get_quality(symbol, interval)
