from __future__ import annotations

import threading
import time
from typing import Any, Callable

from livefolio.schemas.quote import AnimationState

TimerFactory = Callable[[float, Callable[[], None]], Any]


def daemon_timer(delay_sec: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_sec, callback)
    timer.daemon = True
    return timer


class ChangeAnimator:
    """Per-symbol "just changed" flags that expire ``window_ms`` after the latest trigger."""

    def __init__(
        self,
        *,
        window_ms: float = 1500.0,
        timer_factory: TimerFactory = daemon_timer,
        clock: Callable[[], float] = time.time,
        on_expire: Callable[[str], None] | None = None,
    ) -> None:
        self.window_ms = window_ms
        self._timer_factory = timer_factory
        self._clock = clock
        self._on_expire = on_expire
        self._lock = threading.Lock()
        self._states: dict[str, AnimationState] = {}
        self._timers: dict[str, Any] = {}

    def trigger(self, symbol: str) -> None:
        with self._lock:
            previous = self._timers.pop(symbol, None)
            if previous is not None:
                previous.cancel()
            self._states[symbol] = AnimationState(
                symbol=symbol,
                active_until=self._clock() + self.window_ms / 1000.0,
            )
            timer = self._timer_factory(self.window_ms / 1000.0, lambda: self._expire(symbol, timer))
            self._timers[symbol] = timer
        timer.start()

    def _expire(self, symbol: str, timer: Any) -> None:
        with self._lock:
            # a restarted timer replaces the entry; a stale callback must not clear it
            if self._timers.get(symbol) is not timer:
                return
            self._timers.pop(symbol, None)
            self._states.pop(symbol, None)
        if self._on_expire is not None:
            self._on_expire(symbol)

    def clear(self, symbol: str) -> None:
        with self._lock:
            timer = self._timers.pop(symbol, None)
            self._states.pop(symbol, None)
        if timer is not None:
            timer.cancel()

    def clear_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._states.clear()
        for timer in timers:
            timer.cancel()

    def is_active(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._states

    def active_symbols(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._states)

    def states(self) -> list[AnimationState]:
        with self._lock:
            return sorted(self._states.values(), key=lambda s: s.symbol)

    def pending_timers(self) -> int:
        with self._lock:
            return len(self._timers)
