from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

from fastapi import FastAPI
from pydantic import ValidationError

from livefolio.api.routes import router
from livefolio.config.settings import get_settings
from livefolio.integrations.portfolio_rest import PortfolioRestClient
from livefolio.services.change_animator import ChangeAnimator
from livefolio.services.market_hours import MARKET_TZ
from livefolio.services.price_cache import PriceCache, PriceIngestWorker
from livefolio.services.price_source import (
    build_price_source,
    load_initial_prices,
    resolve_symbol_universe,
)


def _bind_runtime_clients(app: FastAPI, settings) -> None:
    app.state.ingest_worker.heartbeat_timeout_sec = settings.HEARTBEAT_TIMEOUT_SEC or 30.0
    app.state.change_animator.window_ms = settings.ANIMATION_WINDOW_MS
    app.state.market_tz = ZoneInfo(settings.MARKET_TIMEZONE)
    app.state.rest_client = PortfolioRestClient(
        settings.API_BASE_URL,
        token_provider=lambda: settings.ACCESS_TOKEN,
    )
    app.state.price_source = build_price_source(settings, app.state.ingest_worker, app.state.rest_client)


def _bootstrap_prices(app: FastAPI, settings, stopping: threading.Event) -> None:
    load_initial_prices(app.state.price_cache, app.state.rest_client)
    symbols = resolve_symbol_universe(settings.STREAM_SYMBOLS, app.state.rest_client)
    if symbols and not stopping.is_set():
        app.state.price_source.subscribe(symbols)


@asynccontextmanager
async def lifespan(app: FastAPI):
    stopping = threading.Event()
    bootstrap = None
    if app.state.price_source is None:
        try:
            settings = app.state.get_settings()
        except ValidationError as exc:
            # keep app import/lifecycle usable without backend env (tests, docs build)
            settings = None
            print(f"[APP][settings_unavailable] errors={exc.error_count()}", flush=True)
        if settings is not None:
            _bind_runtime_clients(app, settings)
            bootstrap = threading.Thread(
                target=_bootstrap_prices,
                args=(app, settings, stopping),
                daemon=True,
                name="price-bootstrap",
            )
            bootstrap.start()

    try:
        yield
    finally:
        stopping.set()
        if bootstrap is not None:
            bootstrap.join(timeout=10.0)
        if app.state.price_source is not None:
            app.state.price_source.close()
        app.state.change_animator.clear_all()
        print("[APP][shutdown] price source closed", flush=True)


app = FastAPI(title="Livefolio Market Sync", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/v1")

# NOTE: lazy-loaded so app import does not require env during tests.
app.state.get_settings = get_settings
app.state.market_tz = MARKET_TZ
app.state.price_cache = PriceCache()
app.state.change_animator = ChangeAnimator()
app.state.ingest_worker = PriceIngestWorker(app.state.price_cache, app.state.change_animator)
app.state.rest_client = None
app.state.price_source = None
app.state.ledgers = {}
