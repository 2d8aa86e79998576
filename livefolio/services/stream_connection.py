from __future__ import annotations

import threading
from functools import partial
from typing import Any, Callable, Iterable, Optional

from livefolio.errors import MalformedPayloadError
from livefolio.integrations.price_stream import parse_event
from livefolio.schemas.stream import HeartbeatEvent, PriceEvent, ReadyState, StreamSession
from livefolio.services.change_animator import TimerFactory, daemon_timer

IDLE = "IDLE"
CONNECTING = "CONNECTING"
OPEN = "OPEN"
RECONNECT_WAIT = "RECONNECT_WAIT"
CLOSED = "CLOSED"

TransportFactory = Callable[..., Any]


def next_backoff_ms(current_ms: float, *, multiplier: float = 1.5, cap_ms: float = 5000.0) -> float:
    return min(current_ms * multiplier, cap_ms)


class StreamConnection:
    """Self-healing push channel for a fixed symbol set.

    IDLE -> CONNECTING -> OPEN -> (transport drop) -> RECONNECT_WAIT -> CONNECTING ...
    ``close()`` moves any state to CLOSED, cancels pending timers and drops every
    later callback from the transport it owned. Transport failures are reported
    through ``on_error`` only; they never end the stream.
    """

    def __init__(
        self,
        symbols: Iterable[str],
        *,
        url_builder: Callable[[list[str]], str],
        transport_factory: TransportFactory,
        on_price: Optional[Callable[[PriceEvent], None]] = None,
        on_heartbeat: Optional[Callable[[HeartbeatEvent], None]] = None,
        on_open: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
        timer_factory: TimerFactory = daemon_timer,
        initial_backoff_ms: float = 800.0,
        backoff_multiplier: float = 1.5,
        max_backoff_ms: float = 5000.0,
        heartbeat_timeout_sec: float | None = None,
    ) -> None:
        self.symbols = sorted(set(symbols))
        self._url_builder = url_builder
        self._transport_factory = transport_factory
        self._on_price = on_price
        self._on_heartbeat = on_heartbeat
        self._on_open = on_open
        self._on_error = on_error
        self._on_close = on_close
        self._timer_factory = timer_factory
        self.initial_backoff_ms = initial_backoff_ms
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff_ms = max_backoff_ms
        self.heartbeat_timeout_sec = heartbeat_timeout_sec

        self._lock = threading.RLock()
        self.state = IDLE
        self.session: StreamSession | None = None
        self.generation = 0
        self.reconnect_count = 0
        self.malformed_messages = 0
        self.last_error: str | None = None
        self.backoff_history: list[float] = []
        self._transport: Any = None
        self._reopen_timer: Any = None
        self._watchdog: Any = None

    # lifecycle

    def connect(self) -> "StreamConnection":
        with self._lock:
            if self.state != IDLE:
                return self
            if not self.symbols:
                return self
            self.session = StreamSession(
                backoff_ms=self.initial_backoff_ms,
                attempt=0,
                subscribed=set(self.symbols),
            )
            self._open_locked()
        return self

    def close(self) -> None:
        with self._lock:
            if self.state == CLOSED:
                return
            self.state = CLOSED
            self.generation += 1
            self._cancel_reopen_locked()
            self._cancel_watchdog_locked()
            transport = self._transport
            self._transport = None
            self.session = None

        if transport is not None:
            transport.close()
        print(f"[STREAM][stream_close] symbols={len(self.symbols)}", flush=True)
        if self._on_close is not None:
            self._on_close()

    def ready_state(self) -> ReadyState:
        with self._lock:
            if self.state == OPEN:
                return "OPEN"
            if self.state in (CONNECTING, RECONNECT_WAIT):
                return "CONNECTING"
            return "CLOSED"

    @property
    def closed(self) -> bool:
        return self.state == CLOSED

    # internals, called with the lock held

    def _open_locked(self) -> None:
        self.generation += 1
        generation = self.generation
        self.session.attempt += 1
        self.state = CONNECTING
        url = self._url_builder(self.symbols)
        print(
            f"[STREAM][stream_connect] attempt={self.session.attempt} symbols={len(self.symbols)}",
            flush=True,
        )
        try:
            transport = self._transport_factory(
                url,
                on_open=partial(self._handle_open, generation),
                on_message=partial(self._handle_message, generation),
                on_error=partial(self._handle_error, generation),
                on_close=partial(self._handle_close, generation),
            )
            self._transport = transport
            transport.start()
        except Exception as exc:
            self._transport = None
            self.last_error = str(exc)
            print(f"[STREAM][stream_start_error] error={exc}", flush=True)
            if self._on_error is not None:
                self._on_error(exc)
            self._schedule_reopen_locked()

    def _is_current(self, generation: int) -> bool:
        return generation == self.generation and self.state not in (CLOSED, RECONNECT_WAIT)

    def _schedule_reopen_locked(self) -> None:
        if self.state == CLOSED:
            return
        self._cancel_reopen_locked()
        self._cancel_watchdog_locked()
        delay_ms = self.session.backoff_ms
        self.state = RECONNECT_WAIT
        self.reconnect_count += 1
        self.backoff_history.append(delay_ms)
        print(f"[STREAM][stream_reconnect_wait] delay_ms={delay_ms:g} attempt={self.session.attempt}", flush=True)
        timer = self._timer_factory(delay_ms / 1000.0, partial(self._reopen, self.generation))
        self._reopen_timer = timer
        timer.start()

    def _reopen(self, generation: int) -> None:
        with self._lock:
            if generation != self.generation or self.state != RECONNECT_WAIT:
                return
            self._reopen_timer = None
            previous = self.session
            # each attempt gets a fresh session; backoff grows across them
            self.session = StreamSession(
                backoff_ms=next_backoff_ms(
                    previous.backoff_ms,
                    multiplier=self.backoff_multiplier,
                    cap_ms=self.max_backoff_ms,
                ),
                attempt=previous.attempt,
                subscribed=set(self.symbols),
            )
            self._open_locked()

    def _cancel_reopen_locked(self) -> None:
        if self._reopen_timer is not None:
            self._reopen_timer.cancel()
            self._reopen_timer = None

    def _arm_watchdog_locked(self) -> None:
        self._cancel_watchdog_locked()
        if not self.heartbeat_timeout_sec:
            return
        timer = self._timer_factory(self.heartbeat_timeout_sec, partial(self._handle_silence, self.generation))
        self._watchdog = timer
        timer.start()

    def _cancel_watchdog_locked(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    # transport callbacks

    def _handle_open(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self.state = OPEN
            self.session.backoff_ms = self.initial_backoff_ms
            self.last_error = None
            self._arm_watchdog_locked()
        print(f"[STREAM][stream_open] symbols={','.join(self.symbols[:5])} total={len(self.symbols)}", flush=True)
        if self._on_open is not None:
            self._on_open()

    def _handle_message(self, generation: int, raw: Any, event_name: str | None = None) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            if self.state == OPEN:
                self._arm_watchdog_locked()

        try:
            event = parse_event(raw, event_name=event_name)
        except MalformedPayloadError as exc:
            with self._lock:
                self.malformed_messages += 1
            print(f"[STREAM][stream_message_skip] reason={exc}", flush=True)
            return

        if isinstance(event, PriceEvent):
            if self._on_price is not None:
                self._on_price(event)
        elif self._on_heartbeat is not None:
            self._on_heartbeat(event)

    def _handle_error(self, generation: int, error: BaseException) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self.last_error = str(error)
        print(f"[STREAM][stream_error] {error}", flush=True)
        if self._on_error is not None:
            self._on_error(error)

    def _handle_close(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation):
                return
            self._transport = None
            self._schedule_reopen_locked()

    def _handle_silence(self, generation: int) -> None:
        with self._lock:
            if generation != self.generation or self.state != OPEN:
                return
            self._watchdog = None
            transport = self._transport
            self._transport = None
            self.last_error = "heartbeat_timeout"
            # bump so the abandoned transport's own close callback is ignored
            self.generation += 1
            self._schedule_reopen_locked()
        print(f"[STREAM][stream_heartbeat_timeout] timeout_sec={self.heartbeat_timeout_sec:g}", flush=True)
        if transport is not None:
            transport.close()
        if self._on_error is not None:
            self._on_error(TimeoutError("heartbeat_timeout"))


def open_price_stream(
    symbols: Iterable[str],
    *,
    url_builder: Callable[[list[str]], str],
    transport_factory: TransportFactory,
    **kwargs: Any,
) -> StreamConnection:
    """Create and connect a StreamConnection. An empty symbol set is never connected."""
    connection = StreamConnection(
        symbols,
        url_builder=url_builder,
        transport_factory=transport_factory,
        **kwargs,
    )
    return connection.connect()
