import unittest

from kubestack.utils.backoff import ExponentialBackoff, PollingPolicy


class TestExponentialBackoff(unittest.TestCase):
    def test_next_backoff(self):
        initial_expected_backoff = 5
        multiplication_factor = 1.5  # increase by x1.5 each iteration

        boff = ExponentialBackoff(randomization_factor=0)  # no jitter for deterministic testing

        backoff_duration_iter_1 = boff.next_backoff()
        self.assertEqual(backoff_duration_iter_1, initial_expected_backoff)

        backoff_duration_iter_2 = boff.next_backoff()
        self.assertEqual(backoff_duration_iter_2, initial_expected_backoff * multiplication_factor)

        backoff_duration_iter_3 = boff.next_backoff()
        self.assertEqual(
            backoff_duration_iter_3, initial_expected_backoff * multiplication_factor**2
        )

    def test_backoff_retry_limit(self):
        initial_expected_backoff = 5
        max_retries_before_stop = 1

        boff = ExponentialBackoff(randomization_factor=0, max_retries=max_retries_before_stop)

        self.assertEqual(boff.next_backoff(), initial_expected_backoff)

        # max_retries exceeded, only 0 should be returned until reset() called
        self.assertEqual(boff.next_backoff(), 0)
        self.assertEqual(boff.next_backoff(), 0)

        # reset backoff
        boff.reset()

        self.assertEqual(boff.next_backoff(), initial_expected_backoff)
        self.assertEqual(boff.next_backoff(), 0)

    def test_backoff_retry_limit_disable_retries(self):
        boff = ExponentialBackoff(randomization_factor=0, max_retries=0)

        # zero max_retries means backoff will always fail
        self.assertEqual(boff.next_backoff(), 0)

        # reset backoff
        boff.reset()

        # reset has no effect since backoff is disabled
        self.assertEqual(boff.next_backoff(), 0)

    def test_backoff_max_interval(self):
        boff = ExponentialBackoff(initial_interval=5, multiplier=2, max_interval=12)

        self.assertEqual([boff.next_backoff() for _ in range(4)], [5, 10, 12, 12])

    def test_backoff_randomization(self):
        boff = ExponentialBackoff(initial_interval=10, randomization_factor=0.5)

        for _ in range(10):
            boff.reset()
            self.assertTrue(5 <= boff.next_backoff() <= 15)


class TestPollingPolicy(unittest.TestCase):
    def test_backoff_uses_policy_schedule(self):
        policy = PollingPolicy(initial_interval=1, multiplier=3, max_interval=10, timeout=None)

        boff = policy.backoff(max_retries=3)

        self.assertEqual([boff.next_backoff() for _ in range(4)], [1, 3, 9, 0])

    def test_with_timeout(self):
        policy = PollingPolicy(initial_interval=2, timeout=100)

        changed = policy.with_timeout(5)

        self.assertEqual(changed.timeout, 5)
        self.assertEqual(changed.initial_interval, 2)
        self.assertEqual(policy.timeout, 100)
