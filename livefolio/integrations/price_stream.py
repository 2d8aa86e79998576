from __future__ import annotations

import json
import math
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Optional
from urllib.parse import urlencode

import requests

from livefolio.errors import MalformedPayloadError
from livefolio.schemas.stream import HeartbeatEvent, PriceEvent

_EVENT_TYPES = {"price", "heartbeat"}


def _to_number(value: Any, *, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayloadError(f"invalid numeric value for {field_name}: {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise MalformedPayloadError(f"non-finite value for {field_name}: {value!r}")
    return number


def parse_event(payload: dict | str | bytes, event_name: str | None = None) -> PriceEvent | HeartbeatEvent:
    """Validate one feed message as a price or heartbeat event."""
    raw: dict[str, Any]

    if isinstance(payload, (str, bytes)):
        try:
            decoded = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayloadError("payload must be valid JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedPayloadError("decoded payload must be an object")
        raw = decoded
    elif isinstance(payload, dict):
        raw = payload
    else:
        raise MalformedPayloadError("payload must be dict or JSON string")

    event_type = raw.get("type") or event_name
    if event_type not in _EVENT_TYPES:
        raise MalformedPayloadError(f"unknown event type: {event_type!r}")

    if event_type == "heartbeat":
        return HeartbeatEvent()

    symbol = raw.get("symbol")
    if not isinstance(symbol, str) or not symbol.strip():
        raise MalformedPayloadError("missing symbol in payload")

    price = _to_number(raw.get("price"), field_name="price")
    if price < 0:
        raise MalformedPayloadError(f"negative price: {price}")

    percent_raw = raw.get("percentChange")
    percent_change = 0.0 if percent_raw is None else _to_number(percent_raw, field_name="percentChange")

    timestamp = raw.get("timestamp")
    return PriceEvent(
        symbol=symbol.strip().upper(),
        price=price,
        percent_change=percent_change,
        timestamp=int(timestamp) if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool) else None,
    )


def iter_sse_events(lines: Iterable[str | bytes]) -> Iterator[tuple[str | None, str]]:
    """Yield ``(event_name, data)`` pairs from text/event-stream lines."""
    event_name: str | None = None
    data: list[str] = []

    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\r")

        if line == "":
            if data:
                yield event_name, "\n".join(data)
            event_name = None
            data = []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value or None
        elif field == "data":
            data.append(value)
        # id / retry are not used: reconnection is owned by StreamConnection

    if data:
        yield event_name, "\n".join(data)


def build_stream_url(
    base_url: str,
    symbols: Iterable[str],
    *,
    token_provider: Optional[Callable[[], str | None]] = None,
    clock: Callable[[], float] = time.time,
    path: str = "/api/stream/prices",
) -> str:
    params = {
        "symbols": ",".join(symbols),
        "v": str(int(clock() * 1000)),
    }
    token = token_provider() if token_provider is not None else None
    if token:
        params["token"] = token
    return f"{base_url.rstrip('/')}{path}?{urlencode(params)}"


class SseTransport:
    """One text/event-stream channel over a streaming requests GET."""

    def __init__(
        self,
        url: str,
        *,
        on_open: Callable[[], None],
        on_message: Callable[[str, str | None], None],
        on_error: Callable[[BaseException], None],
        on_close: Callable[[], None],
        session: Optional[Any] = None,
        connect_timeout_sec: float = 5.0,
    ) -> None:
        self.url = url
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close
        self._session = session or requests
        self.connect_timeout_sec = connect_timeout_sec
        self._closed = threading.Event()
        self._response: Any = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, daemon=True, name="price-sse")
        self._thread.start()

    def run(self) -> None:
        try:
            response = self._session.get(
                self.url,
                stream=True,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=(self.connect_timeout_sec, None),
            )
            self._response = response
            with response:
                response.raise_for_status()
                if self._closed.is_set():
                    return
                self._on_open()
                for event_name, data in iter_sse_events(response.iter_lines(decode_unicode=True)):
                    if self._closed.is_set():
                        break
                    self._on_message(data, event_name)
        except Exception as exc:
            if not self._closed.is_set():
                self._on_error(exc)
        finally:
            self._on_close()

    def close(self) -> None:
        self._closed.set()
        response = self._response
        if response is not None:
            response.close()


class WebSocketTransport:
    """Same callback contract as SseTransport over a websocket-client WebSocketApp."""

    def __init__(
        self,
        url: str,
        *,
        on_open: Callable[[], None],
        on_message: Callable[[str, str | None], None],
        on_error: Callable[[BaseException], None],
        on_close: Callable[[], None],
        websocket_app_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.url = url
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory
        self._ws_app: Any = None
        self._closed = threading.Event()
        self._close_reported = threading.Event()
        self._thread: threading.Thread | None = None

    def _default_websocket_app_factory(self, *args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    @staticmethod
    def to_ws_url(url: str) -> str:
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        if url.startswith("http://"):
            return "ws://" + url[len("http://"):]
        return url

    def _report_close(self) -> None:
        if self._close_reported.is_set():
            return
        self._close_reported.set()
        self._on_close()

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, daemon=True, name="price-ws")
        self._thread.start()

    def run(self) -> None:
        def _on_open(_: Any) -> None:
            self._on_open()

        def _on_message(_: Any, raw_message: Any) -> None:
            self._on_message(raw_message, None)

        def _on_error(_: Any, error: Any) -> None:
            if not self._closed.is_set():
                self._on_error(error if isinstance(error, BaseException) else RuntimeError(str(error)))

        def _on_close(_: Any, code: Any, reason: Any) -> None:
            self._report_close()

        try:
            if self._closed.is_set():
                return
            self._ws_app = self._websocket_app_factory(
                self.to_ws_url(self.url),
                on_open=_on_open,
                on_message=_on_message,
                on_error=_on_error,
                on_close=_on_close,
            )
            # close() may have run while the app was being built
            if self._closed.is_set():
                return
            self._ws_app.run_forever()
        except Exception as exc:
            if not self._closed.is_set():
                self._on_error(exc)
        finally:
            self._report_close()

    def close(self) -> None:
        self._closed.set()
        if self._ws_app is not None:
            self._ws_app.close()
