import logging
import os
import shutil
import sqlite3
import tempfile
import time
import unittest

from skillhost.errors import StorageFailure
from skillhost.runtime.context_store import ContextStore
from skillhost.runtime.retry import RetryEngine
from skillhost.runtime.storage import TRANSIENT_ERRORS, MemoryStorageAdapter, SQLiteStorageAdapter

logging.basicConfig(level=logging.CRITICAL)  # Silence internal logs during tests


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStorage(MemoryStorageAdapter):
    """Raises OSError on the first `failures` writes."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.write_calls = 0

    def write(self, skill_id, key, value, expires_at):
        self.write_calls += 1
        if self.write_calls <= self.failures:
            raise OSError("disk unavailable")
        super().write(skill_id, key, value, expires_at)


def no_sleep_retry(attempts: int = 3) -> RetryEngine:
    return RetryEngine(attempts=attempts, backoff_seconds=0.01, retry_on=TRANSIENT_ERRORS, sleep_fn=lambda s: None)


class TestContextStoreBasics(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = ContextStore(clock=self.clock)

    def test_round_trip(self):
        self.store.set("weather", "city", "Oslo")
        self.assertEqual(self.store.get("weather", "city"), "Oslo")
        self.assertTrue(self.store.has("weather", "city"))

    def test_values_are_scoped_per_skill(self):
        self.store.set("weather", "city", "Oslo")
        self.assertIsNone(self.store.get("timer", "city"))
        self.assertFalse(self.store.has("timer", "city"))

    def test_set_overwrites_and_recomputes_expiry(self):
        first = self.store.set("weather", "city", "Oslo", ttl_seconds=10)
        self.clock.advance(5)
        second = self.store.set("weather", "city", "Bergen", ttl_seconds=10)
        self.assertEqual(first.expires_at, 1010.0)
        self.assertEqual(second.expires_at, 1015.0)
        self.assertEqual(self.store.keys("weather"), ["city"])
        self.assertEqual(self.store.get("weather", "city"), "Bergen")

    def test_remove_is_idempotent(self):
        self.store.set("weather", "city", "Oslo")
        self.store.remove("weather", "city")
        self.store.remove("weather", "city")
        self.store.remove("weather", "never-set")
        self.assertFalse(self.store.has("weather", "city"))

    def test_get_default(self):
        self.assertEqual(self.store.get("weather", "missing", default=42), 42)

    def test_rejects_values_outside_script_model(self):
        with self.assertRaises(TypeError):
            self.store.set("weather", "bad", object())
        with self.assertRaises(TypeError):
            self.store.set("weather", "bad", {1: "int key"})
        with self.assertRaises(ValueError):
            self.store.set("weather", "bad", "x", ttl_seconds=-1)

    def test_tuples_normalised_to_lists(self):
        self.store.set("weather", "coords", (59.9, 10.7))
        self.assertEqual(self.store.get("weather", "coords"), [59.9, 10.7])

    def test_snapshot_and_keys_only_show_live_entries(self):
        self.store.set("weather", "a", 1)
        self.store.set("weather", "b", 2, ttl_seconds=1)
        self.clock.advance(2)
        self.assertEqual(self.store.snapshot("weather"), {"a": 1})
        self.assertEqual(self.store.keys("weather"), ["a"])


class TestContextStoreExpiry(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.storage = MemoryStorageAdapter()
        self.store = ContextStore(storage=self.storage, clock=self.clock)

    def test_lazy_expiry_on_read(self):
        self.store.set("weather", "forecast", "rain", ttl_seconds=10)
        self.clock.advance(9)
        self.assertEqual(self.store.get("weather", "forecast"), "rain")
        self.clock.advance(1)
        self.assertIsNone(self.store.get("weather", "forecast"))
        self.assertFalse(self.store.has("weather", "forecast"))

    def test_zero_ttl_never_expires(self):
        self.store.set("weather", "home", "Oslo", ttl_seconds=0)
        self.clock.advance(10 ** 9)
        self.assertEqual(self.store.get("weather", "home"), "Oslo")

    def test_sweep_removes_only_expired(self):
        self.store.set("weather", "short", 1, ttl_seconds=5)
        self.store.set("weather", "long", 2, ttl_seconds=50)
        self.store.set("timer", "short", 3, ttl_seconds=5)
        self.clock.advance(6)
        self.assertEqual(self.store.sweep(), 2)
        self.assertEqual(self.store.stats()["weather"]["entries"], 1)
        self.assertEqual(self.store.sweep(), 0)

    def test_sweep_ignores_overwritten_entries(self):
        self.store.set("weather", "k", "old", ttl_seconds=5)
        self.store.set("weather", "k", "new", ttl_seconds=100)
        self.clock.advance(6)
        self.assertEqual(self.store.sweep(), 0)
        self.assertEqual(self.store.get("weather", "k"), "new")

    def test_expired_durable_entry_is_deleted_from_storage(self):
        self.store.set("weather", "k", "v", ttl_seconds=5, persist=True)
        self.assertEqual(self.storage.count(), 1)
        self.clock.advance(5)
        self.store.sweep()
        self.assertEqual(self.storage.count(), 0)

    def test_sweeper_thread_starts_and_stops(self):
        store = ContextStore(clock=self.clock, sweep_interval_seconds=0.01)
        store.set("weather", "k", "v", ttl_seconds=1)
        self.clock.advance(2)
        store.start()
        try:
            for _ in range(200):
                if store.stats()["weather"]["entries"] == 0:
                    break
                time.sleep(0.01)
            self.assertEqual(store.stats()["weather"]["entries"], 0)
        finally:
            store.stop()


class TestContextStoreDurability(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="skillhost-test-")
        self.db_path = os.path.join(self.tmpdir, "context.db")
        self.clock = FakeClock()

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _store(self) -> ContextStore:
        return ContextStore(storage=SQLiteStorageAdapter(self.db_path), clock=self.clock)

    def test_durable_entries_survive_restart(self):
        store = self._store()
        store.set("weather", "city", "Oslo", persist=True)
        store.set("weather", "units", {"temp": "C"}, persist=True)
        store.set("weather", "scratch", "gone", persist=False)
        store.close()

        restarted = self._store()
        try:
            self.assertEqual(restarted.get("weather", "city"), "Oslo")
            self.assertEqual(restarted.get("weather", "units"), {"temp": "C"})
            self.assertIsNone(restarted.get("weather", "scratch"))
        finally:
            restarted.close()

    def test_expiry_reevaluated_after_restart(self):
        store = self._store()
        store.set("weather", "forecast", "rain", ttl_seconds=60, persist=True)
        store.set("weather", "home", "Oslo", persist=True)
        store.close()

        self.clock.advance(61)
        restarted = self._store()
        try:
            self.assertIsNone(restarted.get("weather", "forecast"))
            self.assertEqual(restarted.get("weather", "home"), "Oslo")
            # the expired row was removed while loading
            self.assertEqual(restarted.storage.count(), 1)
        finally:
            restarted.close()

    def test_overwrite_as_volatile_drops_durable_row(self):
        store = self._store()
        store.set("weather", "city", "Oslo", persist=True)
        store.set("weather", "city", "Bergen", persist=False)
        store.close()

        restarted = self._store()
        try:
            self.assertIsNone(restarted.get("weather", "city"))
        finally:
            restarted.close()

    def test_remove_deletes_durable_row(self):
        store = self._store()
        store.set("weather", "city", "Oslo", persist=True)
        store.remove("weather", "city")
        store.close()

        conn = sqlite3.connect(self.db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM context_entries").fetchone()[0]
        finally:
            conn.close()
        self.assertEqual(count, 0)

    def test_clear_and_flush(self):
        store = self._store()
        store.set("weather", "a", 1, persist=True)
        store.set("weather", "b", 2)
        self.assertEqual(store.flush("weather"), 1)
        store.clear("weather")
        self.assertEqual(store.keys("weather"), [])
        self.assertEqual(store.storage.count(), 0)
        store.close()

    def test_evict_reloads_from_durable_tier(self):
        store = self._store()
        store.set("weather", "a", 1, persist=True)
        store.set("weather", "b", 2)
        store.evict("weather")
        self.assertEqual(store.snapshot("weather"), {"a": 1})
        store.close()


class TestContextStoreStorageFaults(unittest.TestCase):

    def test_transient_fault_is_retried(self):
        storage = FlakyStorage(failures=2)
        store = ContextStore(storage=storage, retry=no_sleep_retry(attempts=3))
        store.set("weather", "city", "Oslo", persist=True)
        self.assertEqual(storage.write_calls, 3)
        self.assertEqual(storage.count(), 1)

    def test_exhausted_retries_raise_storage_failure(self):
        storage = FlakyStorage(failures=10)
        store = ContextStore(storage=storage, retry=no_sleep_retry(attempts=3))
        with self.assertRaises(StorageFailure) as cm:
            store.set("weather", "city", "Oslo", persist=True)
        self.assertEqual(cm.exception.attempts, 3)
        self.assertEqual(cm.exception.key, "city")
        self.assertIsInstance(cm.exception.cause, OSError)
        # never silently downgraded to a volatile entry
        self.assertFalse(store.has("weather", "city"))
        self.assertEqual(store.metrics.counter("context.storage_failures").get(), 1)

    def test_volatile_writes_do_not_touch_storage(self):
        storage = FlakyStorage(failures=10)
        store = ContextStore(storage=storage, retry=no_sleep_retry())
        store.set("weather", "city", "Oslo")
        self.assertEqual(storage.write_calls, 0)
        self.assertEqual(store.get("weather", "city"), "Oslo")

    def test_backoff_grows_exponentially(self):
        delays = []
        retry = RetryEngine(attempts=4, backoff_seconds=0.1, max_backoff_seconds=0.3, sleep_fn=delays.append)
        def always_fails():
            raise OSError("boom")

        ok, err = retry.run(always_fails)
        self.assertFalse(ok)
        self.assertIsInstance(err, OSError)
        self.assertEqual(delays, [0.1, 0.2, 0.3])


if __name__ == "__main__":
    unittest.main()
