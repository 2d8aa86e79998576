import json
import unittest

from livefolio.services.stream_connection import (
    CLOSED,
    OPEN,
    RECONNECT_WAIT,
    StreamConnection,
    next_backoff_ms,
    open_price_stream,
)


class _FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.callback()


class _FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = _FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if t.started and not t.cancelled]


class _FakeTransport:
    def __init__(self, url, *, on_open, on_message, on_error, on_close):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def close(self):
        self.closed = True

    def drop(self, error="connection reset"):
        self.on_error(RuntimeError(error))
        self.on_close()


class _FakeTransportFactory:
    def __init__(self):
        self.transports = []

    def __call__(self, url, **kwargs):
        transport = _FakeTransport(url, **kwargs)
        self.transports.append(transport)
        return transport

    @property
    def last(self):
        return self.transports[-1]


class StreamConnectionTestBase(unittest.TestCase):
    def setUp(self):
        self.transports = _FakeTransportFactory()
        self.timers = _FakeTimerFactory()
        self.urls = []
        self.events = []

    def url_builder(self, symbols):
        url = f"http://b/api/stream/prices?symbols={','.join(symbols)}&v={len(self.urls)}"
        self.urls.append(url)
        return url

    def make(self, symbols=("AAPL", "MSFT"), **kwargs):
        return StreamConnection(
            symbols,
            url_builder=self.url_builder,
            transport_factory=self.transports,
            timer_factory=self.timers,
            on_price=lambda e: self.events.append(("price", e.symbol, e.price)),
            on_heartbeat=lambda e: self.events.append(("heartbeat",)),
            on_open=lambda: self.events.append(("open",)),
            on_error=lambda exc: self.events.append(("error", str(exc))),
            on_close=lambda: self.events.append(("close",)),
            **kwargs,
        )


class TestStreamConnectionLifecycle(StreamConnectionTestBase):
    def test_connect_opens_transport_and_dispatches_events(self):
        conn = self.make().connect()
        self.assertEqual(conn.ready_state(), "CONNECTING")
        self.assertTrue(self.transports.last.started)
        self.assertIn("symbols=AAPL,MSFT", self.transports.last.url)

        self.transports.last.on_open()
        self.transports.last.on_message(json.dumps({"type": "price", "symbol": "AAPL", "price": 190.5}))
        self.transports.last.on_message('{"type": "heartbeat"}')

        self.assertEqual(conn.ready_state(), "OPEN")
        self.assertEqual(
            self.events,
            [("open",), ("price", "AAPL", 190.5), ("heartbeat",)],
        )

    def test_empty_symbol_set_never_connects(self):
        conn = open_price_stream(
            [],
            url_builder=self.url_builder,
            transport_factory=self.transports,
            timer_factory=self.timers,
        )

        self.assertEqual(self.transports.transports, [])
        self.assertEqual(self.urls, [])
        self.assertEqual(conn.ready_state(), "CLOSED")

    def test_malformed_payload_is_dropped_and_counted(self):
        conn = self.make().connect()
        self.transports.last.on_open()

        self.transports.last.on_message("not-json")
        self.transports.last.on_message('{"type": "price", "symbol": "AAPL"}')

        self.assertEqual(conn.malformed_messages, 2)
        self.assertEqual(conn.state, OPEN)
        self.assertEqual(self.events, [("open",)])

    def test_close_is_idempotent_and_terminal(self):
        conn = self.make().connect()
        self.transports.last.on_open()

        conn.close()
        conn.close()
        conn.connect()

        self.assertTrue(self.transports.last.closed)
        self.assertEqual(len(self.transports.transports), 1)
        self.assertEqual(self.events.count(("close",)), 1)
        self.assertEqual(conn.ready_state(), "CLOSED")

    def test_late_callbacks_after_close_are_ignored(self):
        conn = self.make().connect()
        transport = self.transports.last
        transport.on_open()
        conn.close()

        transport.on_message(json.dumps({"type": "price", "symbol": "AAPL", "price": 1.0}))
        transport.drop()

        self.assertEqual(self.events, [("open",), ("close",)])
        self.assertEqual(self.timers.timers, [])
        self.assertEqual(conn.state, CLOSED)


class TestStreamConnectionReconnect(StreamConnectionTestBase):
    def test_backoff_sequence_is_capped(self):
        conn = self.make().connect()
        delays = []

        for _ in range(7):
            self.transports.last.drop()
            timer = self.timers.timers[-1]
            delays.append(timer.delay)
            timer.fire()

        self.assertEqual(conn.backoff_history, [800, 1200, 1800, 2700, 4050, 5000, 5000])
        for actual, expected in zip(delays, [0.8, 1.2, 1.8, 2.7, 4.05, 5.0, 5.0]):
            self.assertAlmostEqual(actual, expected)
        self.assertEqual(len(self.transports.transports), 8)
        self.assertEqual(conn.reconnect_count, 7)

    def test_backoff_resets_after_successful_open(self):
        conn = self.make().connect()
        for _ in range(3):
            self.transports.last.drop()
            self.timers.timers[-1].fire()

        self.transports.last.on_open()
        self.assertEqual(conn.session.backoff_ms, 800)
        self.transports.last.drop()

        self.assertEqual(conn.backoff_history, [800, 1200, 1800, 800])

    def test_each_attempt_rebuilds_url_and_session(self):
        conn = self.make().connect()
        first_session = conn.session
        self.transports.last.drop()
        self.timers.timers[-1].fire()

        self.assertEqual(len(self.urls), 2)
        self.assertNotEqual(self.transports.transports[0].url, self.transports.transports[1].url)
        self.assertIsNot(conn.session, first_session)
        self.assertEqual(conn.session.attempt, 2)
        self.assertEqual(conn.session.subscribed, {"AAPL", "MSFT"})

    def test_transport_errors_are_advisory(self):
        conn = self.make().connect()
        self.transports.last.on_open()

        self.transports.last.drop("server 502")

        self.assertIn(("error", "server 502"), self.events)
        self.assertNotIn(("close",), self.events)
        self.assertEqual(conn.state, RECONNECT_WAIT)
        self.assertEqual(conn.ready_state(), "CONNECTING")
        self.assertEqual(conn.last_error, "server 502")

    def test_close_during_reconnect_wait_stops_all_attempts(self):
        conn = self.make().connect()
        self.transports.last.drop()
        timer = self.timers.timers[-1]

        conn.close()
        # a timer that already started firing must still be a no-op
        timer.callback()

        self.assertTrue(timer.cancelled)
        self.assertEqual(len(self.transports.transports), 1)
        self.assertEqual(conn.ready_state(), "CLOSED")
        self.assertEqual(self.timers.pending(), [])

    def test_stale_transport_cannot_trigger_second_reconnect(self):
        conn = self.make().connect()
        old = self.transports.last
        old.drop()
        self.timers.timers[-1].fire()

        old.drop()
        old.on_open()

        self.assertEqual(len(self.timers.timers), 1)
        self.assertEqual(conn.ready_state(), "CONNECTING")

    def test_transport_factory_failure_schedules_reconnect(self):
        calls = {"count": 0}

        def flaky_factory(url, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise OSError("socket unavailable")
            return self.transports(url, **kwargs)

        conn = StreamConnection(
            ["AAPL"],
            url_builder=self.url_builder,
            transport_factory=flaky_factory,
            timer_factory=self.timers,
            on_error=lambda exc: self.events.append(("error", str(exc))),
        ).connect()

        self.assertEqual(conn.state, RECONNECT_WAIT)
        self.assertEqual(self.events, [("error", "socket unavailable")])
        self.timers.timers[-1].fire()
        self.assertEqual(len(self.transports.transports), 1)


class TestStreamConnectionHeartbeat(StreamConnectionTestBase):
    def test_silence_past_timeout_forces_reconnect(self):
        conn = self.make(heartbeat_timeout_sec=10).connect()
        transport = self.transports.last
        transport.on_open()
        watchdog = self.timers.timers[-1]
        self.assertEqual(watchdog.delay, 10)

        watchdog.fire()

        self.assertTrue(transport.closed)
        self.assertEqual(conn.state, RECONNECT_WAIT)
        self.assertEqual(conn.last_error, "heartbeat_timeout")
        self.assertIn(("error", "heartbeat_timeout"), self.events)
        self.assertAlmostEqual(self.timers.timers[-1].delay, 0.8)

        # the abandoned transport closing afterwards is ignored
        transport.on_close()
        self.assertEqual(conn.reconnect_count, 1)

    def test_messages_rearm_the_watchdog(self):
        self.make(heartbeat_timeout_sec=10).connect()
        self.transports.last.on_open()
        first = self.timers.timers[-1]

        self.transports.last.on_message('{"type": "heartbeat"}')

        self.assertTrue(first.cancelled)
        self.assertFalse(self.timers.timers[-1].cancelled)


class TestBackoffMath(unittest.TestCase):
    def test_next_backoff_grows_and_caps(self):
        self.assertEqual(next_backoff_ms(800), 1200)
        self.assertEqual(next_backoff_ms(4050), 5000)
        self.assertEqual(next_backoff_ms(1000, multiplier=2.0, cap_ms=1500), 1500)


if __name__ == "__main__":
    unittest.main()
