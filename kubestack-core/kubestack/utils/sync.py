"""Concurrency synchronization utilities"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Optional, Protocol, TypeVar

from kubestack.utils.backoff import ExponentialBackoff, PollingPolicy

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    """Source of time for wait loops, replaced by a fake clock in tests."""

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...

    def wait(self, event: threading.Event, seconds: float) -> bool:
        """Sleeps for the given seconds or until the event is set. Returns whether the event is set."""
        ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def wait(self, event: threading.Event, seconds: float) -> bool:
        return event.wait(seconds)


SYSTEM_CLOCK = SystemClock()


class PollTimeout(Exception):
    """raised by ``poll_until`` when the deadline expired before the condition was met"""

    def __init__(self, elapsed: float, last_value=None):
        super().__init__(f"condition not met after {elapsed:.1f}s")
        self.elapsed = elapsed
        self.last_value = last_value


class PollCancelled(Exception):
    """raised by ``poll_until`` when the cancellation event was set while waiting"""

    def __init__(self, last_value=None):
        super().__init__("waiting was cancelled")
        self.last_value = last_value


def poll_until(
    condition: Callable[[], tuple[bool, T]],
    policy: PollingPolicy,
    clock: Clock = None,
    cancel_event: Optional[threading.Event] = None,
) -> T:
    """
    Evaluates ``condition`` until it reports completion, sleeping between two evaluations according to the backoff
    schedule of the given policy.

    The condition returns a tuple ``(done, value)``. The value of the last evaluation is returned once ``done`` is
    true, and attached to the ``PollTimeout`` / ``PollCancelled`` exceptions otherwise. Exceptions raised by the
    condition propagate immediately.

    :param condition: the condition to evaluate
    :param policy: the backoff schedule and deadline
    :param clock: the clock to use, defaults to the system clock
    :param cancel_event: optional event which stops waiting when set
    :return: the value of the condition once done
    """
    clock = clock or SYSTEM_CLOCK
    backoff = policy.backoff()
    start = clock.monotonic()

    while True:
        done, value = condition()
        if done:
            return value

        elapsed = clock.monotonic() - start
        if policy.timeout is not None and elapsed >= policy.timeout:
            raise PollTimeout(elapsed, value)

        interval = backoff.next_backoff()
        if policy.timeout is not None:
            interval = min(interval, policy.timeout - elapsed)

        LOG.debug("condition not met yet, polling again in %.2fs", interval)
        if cancel_event is not None:
            if cancel_event.is_set() or clock.wait(cancel_event, interval):
                raise PollCancelled(value)
        else:
            clock.sleep(interval)


def retry_with_backoff(
    function: Callable[[], T],
    retry_on: type[Exception] | tuple[type[Exception], ...],
    backoff: ExponentialBackoff,
    clock: Clock = None,
) -> T:
    """
    Calls the function and retries it whenever it raises one of the ``retry_on`` exceptions, sleeping according to
    the backoff. The last error is re-raised once the backoff gives up (returns 0).
    """
    clock = clock or SYSTEM_CLOCK
    while True:
        try:
            return function()
        except retry_on as e:
            interval = backoff.next_backoff()
            if interval <= 0:
                raise
            LOG.debug("retrying after transient error in %.2fs: %s", interval, e)
            clock.sleep(interval)

