import threading
import time
import unittest

from bugsync.services.locks import KeyedLock
from bugsync.services.rate_limiter import RateLimiter


class _FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class RateLimiterTests(unittest.TestCase):
    def test_burst_then_empty(self):
        clock = _FakeClock()
        limiter = RateLimiter(2, 3, clock=clock, sleep=clock.sleep)
        self.assertTrue(limiter.try_acquire())
        self.assertTrue(limiter.try_acquire())
        self.assertTrue(limiter.try_acquire())
        self.assertFalse(limiter.try_acquire())

    def test_refills_over_time(self):
        clock = _FakeClock()
        limiter = RateLimiter(2, 1, clock=clock, sleep=clock.sleep)
        self.assertTrue(limiter.try_acquire())
        clock.now += 0.5
        self.assertTrue(limiter.try_acquire())

    def test_acquire_sleeps_until_token_available(self):
        clock = _FakeClock()
        limiter = RateLimiter(4, 1, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        limiter.acquire()
        self.assertEqual(len(clock.sleeps), 1)
        self.assertAlmostEqual(clock.sleeps[0], 0.25)

    def test_rejects_non_positive_rate(self):
        with self.assertRaises(ValueError):
            RateLimiter(0, 1)

    def test_instances_do_not_share_buckets(self):
        clock = _FakeClock()
        a = RateLimiter(1, 1, clock=clock, sleep=clock.sleep)
        b = RateLimiter(1, 1, clock=clock, sleep=clock.sleep)
        self.assertTrue(a.try_acquire())
        self.assertTrue(b.try_acquire())


class KeyedLockTests(unittest.TestCase):
    def test_same_key_is_serialized(self):
        locks = KeyedLock()
        active = []
        overlaps = []

        def worker():
            with locks.hold(("t", "bug-1", "jira")):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(overlaps, [])

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        with locks.hold("a"):
            done = threading.Event()

            def other():
                with locks.hold("b"):
                    done.set()

            t = threading.Thread(target=other)
            t.start()
            t.join(timeout=1)
            self.assertTrue(done.is_set())

    def test_entries_are_dropped_after_release(self):
        locks = KeyedLock()
        with locks.hold("a"):
            self.assertEqual(len(locks), 1)
        self.assertEqual(len(locks), 0)
