from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from kubestack.cfn.models import AuditEvent, Stack, StackEvent, StackStatus
    from kubestack.tasks import TaskResult


class StackError(Exception):
    """Base class of all errors raised while driving stacks."""

    def __init__(self, message: str, stack_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stack_name = stack_name


class StackNotFoundError(StackError):
    """The stack does not exist. Usually not fatal, used to implement idempotent operations."""

    def __init__(self, stack_name: str, message: Optional[str] = None):
        super().__init__(message or f'stack "{stack_name}" does not exist', stack_name)


class StackInProgressError(StackError):
    """A conflicting operation is in flight for the stack, retryable after a backoff."""

    def __init__(self, stack_name: str, message: Optional[str] = None, status: StackStatus = None):
        super().__init__(
            message or f'stack "{stack_name}" has an operation in progress', stack_name
        )
        self.status = status


AlreadyInProgressError = StackInProgressError


class StackAlreadyExistsError(StackError):
    """The stack exists with a different template, it has to be updated instead of created."""

    def __init__(self, stack_name: str):
        super().__init__(
            f'stack "{stack_name}" already exists with a different template', stack_name
        )


class TransientApiError(StackError):
    """Throttling, network or service side errors, retried with backoff by the lifecycle driver."""

    def __init__(self, message: str, code: Optional[str] = None, stack_name: Optional[str] = None):
        super().__init__(message, stack_name)
        self.code = code


class StackTimeoutError(StackError):
    """A stack did not reach a terminal status before the deadline."""

    def __init__(self, stack: Stack, timeout: Optional[float], elapsed: float = 0):
        status = stack.status.value if stack.status else "unknown"
        super().__init__(
            f'timed out after {elapsed:.0f}s waiting for stack "{stack.name}" '
            f"(last status: {status})",
            stack.name,
        )
        self.stack = stack
        self.timeout = timeout
        self.elapsed = elapsed


class TaskCancelledError(StackError):
    """Waiting was stopped because the orchestration run was cancelled."""

    def __init__(self, message: str = "operation cancelled", stack_name: Optional[str] = None):
        super().__init__(message, stack_name)


class StackFailedError(StackError):
    """
    A stack reached a terminal failure status. Not retried automatically, the most recent stack events (and audit
    events, when available) are attached for diagnostics.
    """

    operation = "operation"

    def __init__(
        self,
        stack: Stack,
        events: list[StackEvent] = None,
        audit_events: list[AuditEvent] = None,
        message: Optional[str] = None,
    ):
        self.stack = stack
        self.status: Optional[StackStatus] = stack.status
        self.events = events or []
        self.audit_events = audit_events or []
        if not message:
            status = stack.status.value if stack.status else "unknown"
            message = f'{self.operation} of stack "{stack.name}" failed with status {status}'
            if stack.status_reason:
                message += f": {stack.status_reason}"
        super().__init__(message, stack.name)

    def describe_events(self) -> str:
        return "\n".join(str(event) for event in self.events)


class CreateFailedError(StackFailedError):
    operation = "creation"


class UpdateFailedError(StackFailedError):
    operation = "update"


class DeleteFailedError(StackFailedError):
    operation = "deletion"


class DependencyTimeoutError(StackError):
    """A deletion waited too long for the deletion of its dependencies."""

    def __init__(self, name: str, received: int, expected: int, timeout: Optional[float]):
        super().__init__(
            f'timed out after {timeout}s waiting for dependencies of "{name}" '
            f"({received} of {expected} completed)"
        )
        self.name = name
        self.received = received
        self.expected = expected
        self.timeout = timeout


class DependencyFailedError(StackError):
    """At least one dependency of a deletion failed."""

    def __init__(self, name: str, failed: list[TaskResult]):
        names = ", ".join(result.name for result in failed)
        super().__init__(f'dependencies of "{name}" failed: {names}')
        self.name = name
        self.failed = failed


class TreeConstructionError(StackError):
    """A task tree could not be built, e.g. because of a malformed dependency spec."""


class AggregateError(Exception):
    """
    The outcome of a task tree run in which at least one task did not succeed. Holds the result of every leaf task,
    in declaration order, and enumerates every failed task by name and reason.
    """

    def __init__(self, results: list[TaskResult]):
        self.results = results
        super().__init__(self.describe())

    @property
    def failed(self) -> list[TaskResult]:
        return [result for result in self.results if not result.ok]

    @property
    def succeeded(self) -> list[TaskResult]:
        return [result for result in self.results if result.ok]

    @property
    def errors(self) -> list[Exception]:
        return [result.error for result in self.failed if result.error is not None]

    def describe(self) -> str:
        failed = self.failed
        lines = [f"{len(failed)} of {len(self.results)} task(s) did not succeed:"]
        for result in failed:
            lines.append(f"  - {result}")
        return "\n".join(lines)
