from __future__ import annotations

import math
import threading
import time
from functools import partial
from typing import Any, Callable, Iterable, Optional, Protocol

from livefolio.errors import PriceSourceUnavailableError
from livefolio.integrations.price_stream import SseTransport, WebSocketTransport, build_stream_url
from livefolio.schemas.stream import HeartbeatEvent, PriceEvent, ReadyState
from livefolio.services.change_animator import TimerFactory, daemon_timer
from livefolio.services.price_cache import PriceCache, PriceIngestWorker
from livefolio.services.stream_connection import StreamConnection, TransportFactory


def finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def usable_price(value: Any) -> float | None:
    """Return ``value`` as a price when it is a finite number >= 0, else None."""
    price = finite_number(value)
    if price is None or price < 0:
        return None
    return price


class PriceSource(Protocol):
    def subscribe(self, symbols: Iterable[str]) -> None: ...

    def close(self) -> None: ...

    def ready_state(self) -> ReadyState: ...

    def metrics(self) -> dict: ...


def load_initial_prices(
    cache: PriceCache,
    rest_client: Any,
    *,
    clock: Callable[[], float] = time.time,
) -> int:
    """Seed the cache from the REST price snapshot. Returns the number of symbols loaded."""
    try:
        rows = rest_client.get_current_prices()
    except PriceSourceUnavailableError as exc:
        print(f"[PRICE][initial_load_error] error={exc}", flush=True)
        return 0

    now = clock()
    loaded = 0
    for symbol, row in rows.items():
        price = usable_price(row.get("price"))
        if price is None:
            continue
        percent_change = finite_number(row.get("change_pct")) or 0.0
        cache.update(symbol, price, percent_change, now)
        loaded += 1
    print(f"[PRICE][initial_load] symbols={loaded}", flush=True)
    return loaded


class StreamingPriceSource:
    """One StreamConnection per visible symbol universe, feeding a PriceIngestWorker."""

    def __init__(
        self,
        *,
        worker: PriceIngestWorker,
        url_builder: Callable[[list[str]], str],
        transport_factory: TransportFactory,
        timer_factory: TimerFactory = daemon_timer,
        initial_backoff_ms: float = 800.0,
        backoff_multiplier: float = 1.5,
        max_backoff_ms: float = 5000.0,
        heartbeat_timeout_sec: float | None = None,
    ) -> None:
        self.worker = worker
        self.url_builder = url_builder
        self.transport_factory = transport_factory
        self.timer_factory = timer_factory
        self.initial_backoff_ms = initial_backoff_ms
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff_ms = max_backoff_ms
        self.heartbeat_timeout_sec = heartbeat_timeout_sec
        self._lock = threading.Lock()
        self.generation = 0
        self.connection: StreamConnection | None = None
        self.superseded_callbacks = 0

    def subscribe(self, symbols: Iterable[str]) -> StreamConnection | None:
        wanted = sorted({str(s).strip().upper() for s in symbols if str(s).strip()})
        with self._lock:
            self.generation += 1
            generation = self.generation
            previous = self.connection
            self.connection = None

        # close must finish before the next connection exists
        if previous is not None:
            previous.close()
            self.worker.on_close()

        self.worker.cache.reset(wanted)
        if not wanted:
            return None

        connection = StreamConnection(
            wanted,
            url_builder=self.url_builder,
            transport_factory=self.transport_factory,
            on_price=partial(self._dispatch, generation, self.worker.on_price),
            on_heartbeat=partial(self._dispatch, generation, self.worker.on_heartbeat),
            on_open=partial(self._dispatch_state, generation, self.worker.on_open),
            on_error=partial(self._dispatch, generation, self.worker.on_error),
            on_close=partial(self._dispatch_state, generation, self.worker.on_close),
            timer_factory=self.timer_factory,
            initial_backoff_ms=self.initial_backoff_ms,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff_ms=self.max_backoff_ms,
            heartbeat_timeout_sec=self.heartbeat_timeout_sec,
        )
        with self._lock:
            if generation != self.generation:
                return None
            self.connection = connection
        return connection.connect()

    def _accepts(self, generation: int) -> bool:
        with self._lock:
            if generation == self.generation:
                return True
            self.superseded_callbacks += 1
            return False

    def _dispatch(self, generation: int, handler: Callable[[Any], Any], payload: Any) -> None:
        if self._accepts(generation):
            handler(payload)
            self._sync_worker()

    def _dispatch_state(self, generation: int, handler: Callable[[], Any]) -> None:
        if self._accepts(generation):
            handler()
            self._sync_worker()

    def _sync_worker(self) -> None:
        connection = self.connection
        if connection is None:
            return
        self.worker.sync_stream_state(
            connected=connection.ready_state() == "OPEN",
            reconnect_count=connection.reconnect_count,
            malformed_messages=connection.malformed_messages,
            last_error=connection.last_error,
        )

    def close(self) -> None:
        with self._lock:
            self.generation += 1
            connection = self.connection
            self.connection = None
        if connection is not None:
            connection.close()
        self.worker.connected = False

    def ready_state(self) -> ReadyState:
        connection = self.connection
        return connection.ready_state() if connection is not None else "CLOSED"

    def metrics(self) -> dict:
        connection = self.connection
        self._sync_worker()
        return {
            "source": "stream",
            "ready_state": self.ready_state(),
            "generation": self.generation,
            "subscribed_symbols": len(connection.symbols) if connection is not None else 0,
            "superseded_callbacks": self.superseded_callbacks,
        }


class PollingPriceSource:
    """REST polling fallback with the same subscribe/close surface as the stream."""

    def __init__(
        self,
        *,
        worker: PriceIngestWorker,
        rest_client: Any,
        interval_sec: float = 15.0,
    ) -> None:
        self.worker = worker
        self.rest_client = rest_client
        self.interval_sec = interval_sec
        self.symbols: set[str] = set()
        self.polls = 0
        self.poll_errors = 0
        self.malformed_rows = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def subscribe(self, symbols: Iterable[str]) -> None:
        wanted = {str(s).strip().upper() for s in symbols if str(s).strip()}
        with self._lock:
            self.symbols = wanted
        self.worker.cache.reset(wanted)
        if wanted:
            self.start()

    def poll_once(self) -> int:
        with self._lock:
            symbols = set(self.symbols)
        self.polls += 1
        try:
            rows = self.rest_client.get_current_prices()
        except PriceSourceUnavailableError as exc:
            self.poll_errors += 1
            self.worker.on_error(exc)
            self.worker.on_close()
            print(f"[POLL][poll_error] error={exc}", flush=True)
            return 0

        self.worker.on_open()
        updated = 0
        for symbol in sorted(symbols):
            row = rows.get(symbol)
            if not row or row.get("price") is None:
                continue
            price = usable_price(row["price"])
            raw_change = row.get("change_pct")
            percent_change = 0.0 if raw_change is None else finite_number(raw_change)
            if price is None or percent_change is None:
                self.malformed_rows += 1
                self.worker.malformed_messages += 1
                print(f"[POLL][poll_row_skip] symbol={symbol} price={row['price']}", flush=True)
                continue
            event = PriceEvent(symbol=symbol, price=price, percent_change=percent_change)
            self.worker.on_price(event)
            updated += 1
        self.worker.on_heartbeat(HeartbeatEvent())
        return updated

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as exc:
                self.poll_errors += 1
                self.worker.on_error(exc)
                print(f"[POLL][poll_crash] error={exc!r}", flush=True)
            self._stop_event.wait(self.interval_sec)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="price-poller")
        self._thread.start()

    def close(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self.worker.on_close()

    def ready_state(self) -> ReadyState:
        running = self._thread is not None and self._thread.is_alive()
        return "OPEN" if running and self.worker.connected else ("CONNECTING" if running else "CLOSED")

    def metrics(self) -> dict:
        return {
            "source": "polling",
            "ready_state": self.ready_state(),
            "subscribed_symbols": len(self.symbols),
            "polls": self.polls,
            "poll_errors": self.poll_errors,
            "malformed_rows": self.malformed_rows,
        }


def build_transport_factory(kind: str, *, session: Optional[Any] = None) -> TransportFactory:
    if kind == "websocket":
        return WebSocketTransport
    if session is None:
        return SseTransport
    return partial(SseTransport, session=session)


def build_price_source(settings: Any, worker: PriceIngestWorker, rest_client: Any) -> PriceSource:
    if settings.PRICE_SOURCE == "polling":
        return PollingPriceSource(worker=worker, rest_client=rest_client, interval_sec=settings.POLL_INTERVAL_SEC)

    token_provider = getattr(rest_client, "token_provider", None)
    return StreamingPriceSource(
        worker=worker,
        url_builder=partial(build_stream_url, settings.API_BASE_URL, token_provider=token_provider),
        transport_factory=build_transport_factory(settings.STREAM_TRANSPORT),
        initial_backoff_ms=settings.RECONNECT_INITIAL_MS,
        backoff_multiplier=settings.RECONNECT_MULTIPLIER,
        max_backoff_ms=settings.RECONNECT_MAX_MS,
        heartbeat_timeout_sec=settings.HEARTBEAT_TIMEOUT_SEC,
    )


def resolve_symbol_universe(configured: Iterable[str], rest_client: Any, *, page: int = 0, size: int = 50) -> list[str]:
    """Configured symbols win; otherwise the first page of the backend symbol list."""
    symbols = [s for s in configured if s]
    if symbols:
        return symbols
    try:
        return rest_client.list_symbols(page=page, size=size)
    except PriceSourceUnavailableError as exc:
        print(f"[PRICE][symbol_universe_error] error={exc}", flush=True)
        return []
