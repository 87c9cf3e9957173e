import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from candlefeed.api.routes import router as api_router
from candlefeed.config import get_settings
from candlefeed.engine import StreamingEngine
from candlefeed.errors import HistoricalLoadError
from candlefeed.providers.loader import get_provider

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    provider = get_provider(settings)
    engine = StreamingEngine(provider, settings=settings)
    app.state.engine = engine

    # Default streams (DEFAULT_STREAMS=BTCUSDT:1m,ETHUSDT:5m)
    for symbol, interval in settings.parsed_default_streams():
        try:
            await engine.subscribe(symbol, interval)
        except HistoricalLoadError as e:
            # Keep the API up; the stream can be subscribed again later.
            log.error("Default stream failed symbol=%s interval=%s error=%s", symbol, interval, e)

    try:
        yield
    finally:
        await engine.shutdown()
        await provider.aclose()


def create_app(engine: Optional[StreamingEngine] = None) -> FastAPI:
    """
    With an engine: serve that engine as-is (tests, embedding).
    Without: the lifespan builds one from settings and tears it down on exit.
    """
    app = FastAPI(
        title="Candlefeed API",
        version="0.1.0",
        lifespan=None if engine is not None else lifespan,
    )
    if engine is not None:
        app.state.engine = engine
    app.include_router(api_router)

    @app.get("/health")
    def health(request: Request):
        current = request.app.state.engine
        return {
            "status": "ok",
            "app_env": settings.app_env,
            "provider_config": settings.provider,
            "provider_loaded": current.provider.__class__.__name__,
            "transport_state": current.state.value,
        }

    return app


app = create_app()
