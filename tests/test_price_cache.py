import itertools
import unittest

from livefolio.schemas.quote import Quote
from livefolio.schemas.stream import HeartbeatEvent, PriceEvent
from livefolio.services.change_animator import ChangeAnimator
from livefolio.services.price_cache import PriceCache, PriceIngestWorker


class _NullTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True


class TestPriceCache(unittest.TestCase):
    def test_first_update_is_a_change(self):
        cache = PriceCache()

        self.assertTrue(cache.update("AAPL", 190.0, 1.2, 100.0))
        quote = cache.get("AAPL")
        self.assertEqual(quote, Quote(symbol="AAPL", last=190.0, percent_change=1.2, observed_at=100.0))

    def test_same_price_replaces_quote_but_reports_no_change(self):
        cache = PriceCache()
        cache.update("AAPL", 190.0, 1.2, 100.0)

        changed = cache.update("AAPL", 190.0, 1.5, 101.0)

        self.assertFalse(changed)
        self.assertEqual(cache.get("AAPL").percent_change, 1.5)
        self.assertEqual(cache.get("AAPL").observed_at, 101.0)

    def test_older_update_is_discarded(self):
        cache = PriceCache()
        cache.update("AAPL", 191.0, 1.0, 200.0)

        self.assertFalse(cache.update("AAPL", 150.0, -3.0, 199.9))

        self.assertEqual(cache.get("AAPL").last, 191.0)
        self.assertEqual(cache.stale_drops, 1)

    def test_equal_observation_time_is_accepted(self):
        cache = PriceCache()
        cache.update("AAPL", 191.0, 1.0, 200.0)

        self.assertTrue(cache.update("AAPL", 192.0, 1.1, 200.0))
        self.assertEqual(cache.get("AAPL").last, 192.0)

    def test_latest_observation_wins_regardless_of_arrival_order(self):
        updates = [(190.0, 0.1, 10.0), (191.0, 0.2, 30.0), (189.0, -0.3, 20.0), (188.0, -0.4, 5.0)]
        for order in itertools.permutations(updates):
            with self.subTest(order=order):
                cache = PriceCache()
                for price, pct, ts in order:
                    cache.update("MSFT", price, pct, ts)
                self.assertEqual(cache.get("MSFT").last, 191.0)
                self.assertEqual(cache.get("MSFT").observed_at, 30.0)

    def test_reset_keeps_overlap_and_drops_the_rest(self):
        cache = PriceCache()
        cache.update("AAPL", 1.0, 0.0, 1.0)
        cache.update("MSFT", 2.0, 0.0, 1.0)

        cache.reset({"MSFT", "NVDA"})

        self.assertIsNone(cache.get("AAPL"))
        self.assertEqual(cache.get("MSFT").last, 2.0)
        self.assertIsNone(cache.get("NVDA"))
        self.assertEqual(cache.symbols(), {"MSFT", "NVDA"})

    def test_listeners_only_see_price_changes(self):
        cache = PriceCache()
        seen = []
        cache.add_listener(seen.append)

        cache.update("AAPL", 1.0, 0.0, 1.0)
        cache.update("AAPL", 1.0, 0.5, 2.0)
        cache.update("AAPL", 1.5, 0.5, 3.0)
        cache.remove_listener(seen.append)
        cache.update("AAPL", 2.0, 0.5, 4.0)

        self.assertEqual([q.last for q in seen], [1.0, 1.5])

    def test_seed_and_snapshot(self):
        cache = PriceCache()
        count = cache.seed(
            [
                Quote(symbol="AAPL", last=1.0, observed_at=1.0),
                Quote(symbol="MSFT", last=2.0, percent_change=0.5, observed_at=1.0),
            ]
        )

        self.assertEqual(count, 2)
        snapshot = cache.snapshot()
        snapshot.clear()
        self.assertEqual(len(cache.snapshot()), 2)


class TestPriceIngestWorker(unittest.TestCase):
    def setUp(self):
        self.now = [1000.0]
        self.cache = PriceCache()
        self.animator = ChangeAnimator(timer_factory=_NullTimer, clock=lambda: self.now[0])
        self.worker = PriceIngestWorker(
            self.cache,
            self.animator,
            clock=lambda: self.now[0],
            heartbeat_timeout_sec=10,
        )

    def test_price_change_updates_cache_and_triggers_animation(self):
        self.assertTrue(self.worker.on_price(PriceEvent(symbol="AAPL", price=190.0, percent_change=1.0)))

        self.assertEqual(self.cache.get("AAPL").observed_at, 1000.0)
        self.assertTrue(self.animator.is_active("AAPL"))

    def test_unchanged_price_does_not_animate(self):
        self.worker.on_price(PriceEvent(symbol="AAPL", price=190.0))
        self.animator.clear_all()
        self.now[0] += 1

        self.assertFalse(self.worker.on_price(PriceEvent(symbol="AAPL", price=190.0, percent_change=2.0)))
        self.assertFalse(self.animator.is_active("AAPL"))
        self.assertEqual(self.cache.get("AAPL").percent_change, 2.0)

    def test_metrics_track_feed_health(self):
        self.worker.on_open()
        self.worker.on_price(PriceEvent(symbol="AAPL", price=190.0))
        self.worker.on_heartbeat(HeartbeatEvent())
        self.worker.on_error(RuntimeError("blip"))

        metrics = self.worker.metrics(now=1005.0)

        self.assertEqual(metrics["cached_symbols"], 1)
        self.assertEqual(metrics["price_messages"], 1)
        self.assertEqual(metrics["heartbeats"], 1)
        self.assertEqual(metrics["upserts"], 1)
        self.assertEqual(metrics["animating_symbols"], 1)
        self.assertTrue(metrics["connected"])
        self.assertTrue(metrics["heartbeat_fresh"])
        self.assertEqual(metrics["last_error"], "blip")

        self.assertFalse(self.worker.metrics(now=1011.0)["heartbeat_fresh"])

    def test_sync_stream_state_and_teardown(self):
        self.worker.on_price(PriceEvent(symbol="AAPL", price=190.0))
        self.worker.sync_stream_state(connected=True, reconnect_count=3, malformed_messages=2, last_error=None)

        self.assertEqual(self.worker.metrics()["reconnect_count"], 3)
        self.assertEqual(self.worker.metrics()["malformed_messages"], 2)

        self.worker.teardown()

        self.assertIsNone(self.cache.get("AAPL"))
        self.assertEqual(self.animator.active_symbols(), frozenset())
        self.assertEqual(self.animator.pending_timers(), 0)
        self.assertFalse(self.worker.connected)


if __name__ == "__main__":
    unittest.main()
