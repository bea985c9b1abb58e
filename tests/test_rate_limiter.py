import unittest


class _ManualClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class RateLimiterTests(unittest.TestCase):
    def _limiter(self, max_jobs=3, window=1.0):
        from issue_relay.services.rate_limiter import RateLimiter

        clock = _ManualClock()
        return RateLimiter(max_jobs=max_jobs, window_seconds=window, clock=clock, sleep=clock.sleep), clock

    def test_caps_acquisitions_per_window(self):
        limiter, clock = self._limiter(max_jobs=3)

        self.assertTrue(all(limiter.try_acquire() for _ in range(3)))
        self.assertFalse(limiter.try_acquire())

        clock.now += 0.5
        self.assertFalse(limiter.try_acquire())
        clock.now += 0.5
        self.assertTrue(limiter.try_acquire())

    def test_acquire_waits_for_oldest_slot(self):
        limiter, clock = self._limiter(max_jobs=2)
        limiter.try_acquire()
        clock.now += 0.25
        limiter.try_acquire()

        self.assertTrue(limiter.acquire())
        self.assertAlmostEqual(sum(clock.sleeps), 0.75)

    def test_acquire_times_out(self):
        limiter, clock = self._limiter(max_jobs=1, window=10.0)
        limiter.try_acquire()

        self.assertFalse(limiter.acquire(timeout=0.5))
        self.assertAlmostEqual(sum(clock.sleeps), 0.5)

    def test_refund_returns_slot(self):
        limiter, _ = self._limiter(max_jobs=1)

        self.assertTrue(limiter.try_acquire())
        limiter.refund()
        self.assertTrue(limiter.try_acquire())
        self.assertEqual(limiter.stats["total_acquired"], 1)

    def test_rejects_invalid_configuration(self):
        from issue_relay.services.rate_limiter import RateLimiter

        with self.assertRaises(ValueError):
            RateLimiter(max_jobs=0)
        with self.assertRaises(ValueError):
            RateLimiter(window_seconds=0)


if __name__ == "__main__":
    unittest.main()
