import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from kubestack import config
from kubestack.cfn.exceptions import (
    DependencyFailedError,
    DependencyTimeoutError,
    TaskCancelledError,
)
from kubestack.tasks import TaskResult

LOG = logging.getLogger(__name__)


@dataclass
class WaitResult:
    outcomes: list[TaskResult] = field(default_factory=list)
    # whether all expected signals arrived before the timeout
    complete: bool = True

    @property
    def failed(self) -> list[TaskResult]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


class DeleteWaitCondition:
    """
    A gate which lets a deletion block until a group of dependencies (e.g. the deletion of all IAM service account
    stacks) has completed. Every dependency calls ``signal`` exactly once with its outcome, the consumer calls
    ``wait``. Signalling is safe from concurrent threads.
    """

    def __init__(self, expected: int, name: str = "dependencies"):
        if expected < 0:
            raise ValueError(f"expected signal count must not be negative: {expected}")
        self.name = name
        self.expected = expected
        self._outcomes: list[TaskResult] = []
        self._condition = threading.Condition()

    @property
    def received(self) -> int:
        with self._condition:
            return len(self._outcomes)

    def signal(self, result: TaskResult) -> None:
        with self._condition:
            if len(self._outcomes) >= self.expected:
                raise ValueError(
                    f'wait condition "{self.name}" received more than {self.expected} signals'
                )
            self._outcomes.append(result)
            LOG.debug(
                'wait condition "%s" received %s (%d/%d)',
                self.name,
                result,
                len(self._outcomes),
                self.expected,
            )
            self._condition.notify_all()

    def wait(
        self, timeout: Optional[float] = None, cancel_event: threading.Event = None
    ) -> WaitResult:
        """
        Blocks until all expected signals arrived or the timeout elapsed.

        :param timeout: max time in seconds to wait, ``None`` waits forever
        :param cancel_event: stops waiting (raising ``TaskCancelledError``) when set
        :return: the outcomes received so far, and whether they are complete
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while len(self._outcomes) < self.expected:
                if cancel_event is not None and cancel_event.is_set():
                    raise TaskCancelledError(f'waiting for "{self.name}" was cancelled')
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return WaitResult(list(self._outcomes), complete=False)
                # wake up periodically to notice cancellation
                slice_ = 1.0 if remaining is None else min(remaining, 1.0)
                self._condition.wait(slice_ if cancel_event is not None else remaining)
            return WaitResult(list(self._outcomes), complete=True)

    def wait_or_raise(
        self,
        timeout: Optional[float] = None,
        force: bool = False,
        cancel_event: threading.Event = None,
    ) -> WaitResult:
        """
        Like ``wait``, but raises ``DependencyTimeoutError`` if not all dependencies completed in time, or
        ``DependencyFailedError`` if any of them failed. With ``force`` these are logged and the result is returned.
        """
        if timeout is None:
            timeout = config.DEPENDENCY_WAIT_TIMEOUT
        result = self.wait(timeout, cancel_event)
        if not result.complete:
            error = DependencyTimeoutError(self.name, len(result.outcomes), self.expected, timeout)
            if not force:
                raise error
            LOG.warning("%s, proceeding anyway (force)", error)
        if failed := result.failed:
            error = DependencyFailedError(self.name, failed)
            if not force:
                raise error
            LOG.warning("%s, proceeding anyway (force)", error)
        return result

