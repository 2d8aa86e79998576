from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

from livefolio.schemas.quote import Quote
from livefolio.schemas.stream import HeartbeatEvent, PriceEvent
from livefolio.services.change_animator import ChangeAnimator

QuoteListener = Callable[[Quote], None]


class PriceCache:
    """Last-known quote per symbol; one writer, many readers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, Quote] = {}
        self._universe: set[str] = set()
        self._listeners: list[QuoteListener] = []
        self.stale_drops = 0

    def update(self, symbol: str, price: float, percent_change: float, observed_at: float) -> bool:
        """Store the quote unless a newer one is cached. Returns True when the price moved."""
        quote = Quote(symbol=symbol, last=price, percent_change=percent_change, observed_at=observed_at)
        with self._lock:
            current = self._rows.get(symbol)
            if current is not None and observed_at < current.observed_at:
                self.stale_drops += 1
                return False
            self._rows[symbol] = quote
            changed = current is None or current.last != price
            listeners = list(self._listeners) if changed else []
        for listener in listeners:
            listener(quote)
        return changed

    def get(self, symbol: str) -> Quote | None:
        with self._lock:
            return self._rows.get(symbol)

    def reset(self, symbols: Iterable[str]) -> None:
        keep = set(symbols)
        with self._lock:
            self._universe = keep
            self._rows = {s: q for s, q in self._rows.items() if s in keep}

    def seed(self, quotes: Iterable[Quote]) -> int:
        count = 0
        for quote in quotes:
            self.update(quote.symbol, quote.last, quote.percent_change, quote.observed_at)
            count += 1
        return count

    def add_listener(self, listener: QuoteListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: QuoteListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def snapshot(self) -> dict[str, Quote]:
        with self._lock:
            return dict(self._rows)

    def symbols(self) -> set[str]:
        with self._lock:
            return set(self._universe) | set(self._rows)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()
            self._universe.clear()


class PriceIngestWorker:
    """Price-source handler target: cache update, change animation and feed health."""

    def __init__(
        self,
        cache: PriceCache,
        animator: ChangeAnimator | None = None,
        *,
        clock: Callable[[], float] = time.time,
        heartbeat_timeout_sec: float = 30.0,
    ) -> None:
        self.cache = cache
        self.animator = animator or ChangeAnimator()
        self.clock = clock
        self.heartbeat_timeout_sec = heartbeat_timeout_sec
        self.price_messages = 0
        self.heartbeats = 0
        self.upserts = 0
        self.connected = False
        self.last_message_ts: float | None = None
        self.last_heartbeat_ts: float | None = None
        self.last_error: str | None = None
        self.reconnect_count = 0
        self.malformed_messages = 0

    def on_price(self, event: PriceEvent) -> bool:
        now = self.clock()
        changed = self.cache.update(event.symbol, event.price, event.percent_change, now)
        self.price_messages += 1
        self.last_message_ts = now
        self.last_heartbeat_ts = now
        if changed:
            self.upserts += 1
            self.animator.trigger(event.symbol)
        return changed

    def on_heartbeat(self, _event: HeartbeatEvent) -> None:
        self.heartbeats += 1
        self.last_heartbeat_ts = self.clock()

    def on_open(self) -> None:
        self.connected = True
        self.last_error = None
        self.last_heartbeat_ts = self.clock()

    def on_error(self, error: BaseException | str) -> None:
        self.last_error = str(error)

    def on_close(self) -> None:
        self.connected = False

    def sync_stream_state(
        self,
        *,
        connected: bool,
        reconnect_count: int,
        malformed_messages: int,
        last_error: str | None,
    ) -> None:
        self.connected = bool(connected)
        self.reconnect_count = int(reconnect_count)
        self.malformed_messages = int(malformed_messages)
        self.last_error = last_error

    def teardown(self) -> None:
        self.animator.clear_all()
        self.cache.clear()
        self.connected = False

    def metrics(self, now: float | None = None) -> dict:
        ref = self.clock() if now is None else now
        heartbeat_fresh = False
        if self.last_heartbeat_ts is not None:
            heartbeat_fresh = (ref - self.last_heartbeat_ts) <= self.heartbeat_timeout_sec

        return {
            "cached_symbols": len(self.cache.snapshot()),
            "price_messages": self.price_messages,
            "heartbeats": self.heartbeats,
            "upserts": self.upserts,
            "stale_drops": self.cache.stale_drops,
            "malformed_messages": self.malformed_messages,
            "animating_symbols": len(self.animator.active_symbols()),
            "connected": self.connected,
            "heartbeat_fresh": heartbeat_fresh,
            "last_message_ts": self.last_message_ts,
            "last_heartbeat_ts": self.last_heartbeat_ts,
            "last_error": self.last_error,
            "reconnect_count": self.reconnect_count,
        }
