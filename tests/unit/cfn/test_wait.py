import threading
import time

import pytest

from kubestack.cfn.exceptions import (
    DependencyFailedError,
    DependencyTimeoutError,
    TaskCancelledError,
)
from kubestack.cfn.wait import DeleteWaitCondition
from kubestack.tasks import TaskResult, TaskStatus


def succeeded(name: str) -> TaskResult:
    return TaskResult(name, TaskStatus.SUCCEEDED)


def failed(name: str) -> TaskResult:
    return TaskResult(name, TaskStatus.FAILED, RuntimeError(f"{name} failed"))


class TestDeleteWaitCondition:
    def test_wait_returns_after_all_signals(self):
        condition = DeleteWaitCondition(3)

        def _signal():
            for i in range(3):
                time.sleep(0.01)
                condition.signal(succeeded(f"dep-{i}"))

        thread = threading.Thread(target=_signal)
        thread.start()
        result = condition.wait(timeout=5)
        thread.join()

        assert result.complete
        assert [outcome.name for outcome in result.outcomes] == ["dep-0", "dep-1", "dep-2"]
        assert condition.received == 3

    def test_wait_never_returns_early(self):
        condition = DeleteWaitCondition(2)
        condition.signal(succeeded("dep-0"))

        result = condition.wait(timeout=0.1)

        assert not result.complete
        assert len(result.outcomes) == 1

    def test_zero_expected_signals(self):
        assert DeleteWaitCondition(0).wait(timeout=0).complete

    def test_concurrent_signalers(self):
        condition = DeleteWaitCondition(50)
        threads = [
            threading.Thread(target=condition.signal, args=(succeeded(f"dep-{i}"),))
            for i in range(50)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        result = condition.wait(timeout=1)

        assert result.complete
        assert len(result.outcomes) == 50

    def test_too_many_signals(self):
        condition = DeleteWaitCondition(1)
        condition.signal(succeeded("dep-0"))

        with pytest.raises(ValueError):
            condition.signal(succeeded("dep-1"))

    def test_negative_expected_count(self):
        with pytest.raises(ValueError):
            DeleteWaitCondition(-1)

    def test_failed_outcomes_are_recorded(self):
        condition = DeleteWaitCondition(2)
        condition.signal(succeeded("dep-0"))
        condition.signal(failed("dep-1"))

        result = condition.wait(timeout=1)

        assert result.complete
        assert [outcome.name for outcome in result.failed] == ["dep-1"]

    def test_wait_is_cancellable(self):
        condition = DeleteWaitCondition(1)
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(TaskCancelledError):
            condition.wait(timeout=10, cancel_event=cancel_event)


class TestWaitOrRaise:
    def test_timeout_raises(self):
        condition = DeleteWaitCondition(2, name="iam stacks")
        condition.signal(succeeded("dep-0"))

        with pytest.raises(DependencyTimeoutError) as e:
            condition.wait_or_raise(timeout=0.05)

        assert e.value.received == 1
        assert e.value.expected == 2
        assert "iam stacks" in str(e.value)

    def test_timeout_proceeds_with_force(self):
        condition = DeleteWaitCondition(2)

        result = condition.wait_or_raise(timeout=0.05, force=True)

        assert not result.complete

    def test_failure_raises(self):
        condition = DeleteWaitCondition(1)
        condition.signal(failed("dep-0"))

        with pytest.raises(DependencyFailedError) as e:
            condition.wait_or_raise(timeout=1)

        assert [outcome.name for outcome in e.value.failed] == ["dep-0"]

    def test_failure_proceeds_with_force(self):
        condition = DeleteWaitCondition(1)
        condition.signal(failed("dep-0"))

        result = condition.wait_or_raise(timeout=1, force=True)

        assert len(result.failed) == 1
