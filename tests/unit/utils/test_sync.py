import threading

import pytest

from kubestack.cfn.exceptions import StackNotFoundError
from kubestack.utils.backoff import ExponentialBackoff, PollingPolicy
from kubestack.utils.sync import (
    PollCancelled,
    PollTimeout,
    poll_until,
    retry_with_backoff,
)


@pytest.fixture
def policy():
    return PollingPolicy(initial_interval=1, multiplier=2, max_interval=4, timeout=20)


class TestPollUntil:
    def test_returns_value_once_done(self, policy, clock):
        values = iter([(False, "a"), (False, "b"), (True, "c")])

        assert poll_until(lambda: next(values), policy, clock) == "c"
        assert clock.sleeps == [1, 2]

    def test_does_not_sleep_if_done_immediately(self, policy, clock):
        assert poll_until(lambda: (True, 42), policy, clock) == 42
        assert clock.sleeps == []

    def test_backoff_is_capped(self, policy, clock):
        calls = []

        def _condition():
            calls.append(1)
            return len(calls) == 6, len(calls)

        assert poll_until(_condition, policy, clock) == 6
        assert clock.sleeps == [1, 2, 4, 4, 4]

    def test_timeout(self, policy, clock):
        with pytest.raises(PollTimeout) as e:
            poll_until(lambda: (False, "last"), policy, clock)

        assert e.value.last_value == "last"
        assert e.value.elapsed >= 20
        # the last sleep is shortened to the deadline
        assert sum(clock.sleeps) == 20

    def test_cancel(self, policy, clock):
        cancel_event = threading.Event()
        calls = []

        def _condition():
            calls.append(1)
            if len(calls) == 2:
                cancel_event.set()
            return False, len(calls)

        with pytest.raises(PollCancelled) as e:
            poll_until(_condition, policy, clock, cancel_event)

        assert e.value.last_value == 2
        assert len(calls) == 2

    def test_condition_errors_propagate(self, policy, clock):
        def _condition():
            raise StackNotFoundError("s1")

        with pytest.raises(StackNotFoundError):
            poll_until(_condition, policy, clock)
        assert clock.sleeps == []


class TestRetryWithBackoff:
    def test_retries_until_success(self, clock):
        attempts = []

        def _flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("throttled")
            return "ok"

        backoff = ExponentialBackoff(initial_interval=1, multiplier=2, max_retries=5)

        assert retry_with_backoff(_flaky, ConnectionError, backoff, clock) == "ok"
        assert clock.sleeps == [1, 2]

    def test_reraises_when_retries_are_exhausted(self, clock):
        def _failing():
            raise ConnectionError("throttled")

        backoff = ExponentialBackoff(initial_interval=1, max_retries=2)

        with pytest.raises(ConnectionError):
            retry_with_backoff(_failing, ConnectionError, backoff, clock)
        assert len(clock.sleeps) == 2

    def test_other_errors_are_not_retried(self, clock):
        def _failing():
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            retry_with_backoff(_failing, ConnectionError, ExponentialBackoff(), clock)
        assert clock.sleeps == []
