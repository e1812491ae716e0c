"""
Drives single stacks through their lifecycle.

    Absent  -> Creating -> Created | CreateFailed
    Created -> Updating -> Created | UpdateFailed
    Created -> Deleting -> Absent  | DeleteFailed

Transitional statuses are never terminal. After issuing a mutating call the driver polls the stack with an
exponential backoff until a terminal status is observed, or the deadline / cancellation fires.
"""

import dataclasses
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar, Union

from kubestack import config, constants
from kubestack.cfn.exceptions import (
    CreateFailedError,
    DeleteFailedError,
    StackAlreadyExistsError,
    StackError,
    StackFailedError,
    StackInProgressError,
    StackNotFoundError,
    StackTimeoutError,
    TaskCancelledError,
    TransientApiError,
    UpdateFailedError,
)
from kubestack.cfn.models import (
    ChangeSet,
    ChangeSetStatus,
    ResourceSet,
    Stack,
    StackStatus,
)
from kubestack.cfn.naming import make_change_set_name, make_nodegroup_stack_name
from kubestack.cfn.registry import StackRegistry
from kubestack.utils.backoff import PollingPolicy
from kubestack.utils.sync import (
    SYSTEM_CLOCK,
    Clock,
    PollCancelled,
    PollTimeout,
    poll_until,
    retry_with_backoff,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OperationToken:
    stack_name: str
    operation: str
    token: str


class InFlightOperations:
    """
    Registry of the mutating operations currently in flight, at most one per stack name. A token is acquired before
    a mutating call is issued and released once the stack reached a terminal status, or the operation failed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._operations: dict[str, OperationToken] = {}

    def acquire(self, stack_name: str, operation: str) -> OperationToken:
        with self._lock:
            if existing := self._operations.get(stack_name):
                raise StackInProgressError(
                    stack_name,
                    f'cannot {operation} stack "{stack_name}", '
                    f"a {existing.operation} operation is already in progress",
                )
            token = OperationToken(stack_name, operation, str(uuid.uuid4()))
            self._operations[stack_name] = token
            return token

    def release(self, token: OperationToken) -> None:
        with self._lock:
            if self._operations.get(token.stack_name) == token:
                del self._operations[token.stack_name]

    def get(self, stack_name: str) -> Optional[OperationToken]:
        with self._lock:
            return self._operations.get(stack_name)

    @contextmanager
    def operation(self, stack_name: str, operation: str):
        token = self.acquire(stack_name, operation)
        try:
            yield token
        finally:
            self.release(token)


# operations in flight in this process
IN_FLIGHT_OPERATIONS = InFlightOperations()


@dataclass
class UpdateStackOptions:
    stack_name: str
    change_set_name: Optional[str] = None
    description: str = ""
    # the new template, either as resource set or already rendered
    resource_set: Optional[ResourceSet] = None
    template_body: Optional[str] = None
    # None keeps the current parameters of the stack
    parameters: Optional[dict[str, str]] = None
    # merged into the current tags of the stack
    tags: Optional[dict[str, str]] = None
    wait: bool = True


def capabilities_for(resource_set: ResourceSet) -> list[str]:
    capabilities = []
    if resource_set.with_iam():
        capabilities.append(constants.CAPABILITY_IAM)
    if resource_set.with_named_iam():
        capabilities.append(constants.CAPABILITY_NAMED_IAM)
    return capabilities


def templates_equal(template_a: str, template_b: str) -> bool:
    try:
        return json.loads(template_a) == json.loads(template_b)
    except (TypeError, ValueError):
        return (template_a or "").strip() == (template_b or "").strip()


class StackLifecycleDriver:
    def __init__(
        self,
        registry: StackRegistry,
        policy: PollingPolicy = None,
        clock: Clock = None,
        in_flight: InFlightOperations = None,
    ):
        self.registry = registry
        self.api = registry.api
        self.policy = policy or PollingPolicy.from_config()
        self.clock = clock or SYSTEM_CLOCK
        self.in_flight = in_flight or IN_FLIGHT_OPERATIONS

    def _call(self, function: Callable[[], T]) -> T:
        """Calls the API, retrying transient errors with backoff."""
        backoff = self.policy.backoff(max_retries=config.TRANSIENT_MAX_RETRIES)
        return retry_with_backoff(function, TransientApiError, backoff, self.clock)

    def _describe(self, stack: Union[Stack, str]) -> Optional[Stack]:
        return self._call(lambda: self.registry.describe_stack(stack))

    # create

    def create(
        self,
        name: str,
        resource_set: ResourceSet,
        tags: dict[str, str] = None,
        parameters: dict[str, str] = None,
        wait: bool = True,
        cancel_event: threading.Event = None,
    ) -> Stack:
        """
        Creates the stack and (if ``wait`` is set) waits until it is created.

        Idempotent: if the stack already exists in a complete state with an identical template, it is returned
        without issuing the creation again.

        :raises StackInProgressError: if another operation on the stack is in flight
        :raises StackAlreadyExistsError: if the stack exists with a different template
        :raises CreateFailedError: if the creation failed
        """
        template_body = resource_set.render_json()
        capabilities = capabilities_for(resource_set)

        with self.in_flight.operation(name, "create"):
            existing = self._describe(name)
            if existing is not None and existing.status != StackStatus.DELETE_COMPLETE:
                if existing.status.is_transitional:
                    raise StackInProgressError(
                        name,
                        f'stack "{name}" is in {existing.status} state and can not be created',
                        status=existing.status,
                    )
                if existing.status.is_complete:
                    current_template = self._call(lambda: self.api.get_template(existing.identifier))
                    if templates_equal(current_template, template_body):
                        LOG.info('stack "%s" already exists, nothing to create', name)
                        return existing
                    raise StackAlreadyExistsError(name)
                raise self._failure(CreateFailedError, existing)

            LOG.info('deploying stack "%s"', name)
            stack_id = self._call(
                lambda: self.api.create_stack(
                    name, template_body, tags or {}, parameters or {}, capabilities
                )
            )
            stack = Stack(
                name=name,
                stack_id=stack_id,
                status=StackStatus.CREATE_IN_PROGRESS,
                tags=dict(tags or {}),
                parameters=dict(parameters or {}),
                template_body=template_body,
                capabilities=capabilities,
            )
            if not wait:
                return stack
            return self.wait_until_created(stack, cancel_event=cancel_event)

    def wait_until_created(
        self, stack: Stack, timeout: float = None, cancel_event: threading.Event = None
    ) -> Stack:
        LOG.info('waiting for stack "%s" to be created', stack.name)
        final = self.wait_until_terminal(stack, timeout, cancel_event)
        if final is None:
            raise self._failure(
                CreateFailedError, dataclasses.replace(stack, status=StackStatus.DELETE_COMPLETE)
            )
        if final.status != StackStatus.CREATE_COMPLETE:
            raise self._failure(CreateFailedError, final)
        LOG.info('created stack "%s"', stack.name)
        return final

    # update

    def update(
        self, options: UpdateStackOptions, cancel_event: threading.Event = None
    ) -> Optional[ChangeSet]:
        """
        Updates the stack through a change set. If the change set turns out to be empty, it is discarded and
        ``None`` is returned without executing anything.

        :return: the executed change set, or ``None`` if there was nothing to update
        """
        name = options.stack_name
        change_set_name = options.change_set_name or make_change_set_name("update")

        with self.in_flight.operation(name, "update"):
            current = self._describe(name)
            if current is None or current.status == StackStatus.DELETE_COMPLETE:
                raise StackNotFoundError(name)
            if current.status.is_transitional:
                raise StackInProgressError(
                    name,
                    f'stack "{name}" is in {current.status} state and can not be updated',
                    status=current.status,
                )

            if options.resource_set is not None:
                template_body = options.resource_set.render_json()
                capabilities = capabilities_for(options.resource_set)
            elif options.template_body is not None:
                template_body = options.template_body
                capabilities = list(current.capabilities)
            else:
                raise ValueError(f'no template given to update stack "{name}"')
            parameters = current.parameters if options.parameters is None else options.parameters
            tags = {**current.tags, **(options.tags or {})}

            LOG.info('creating change set "%s" for stack "%s"', change_set_name, name)
            self._call(
                lambda: self.api.create_change_set(
                    name,
                    change_set_name,
                    template_body,
                    tags,
                    parameters,
                    capabilities,
                    options.description,
                )
            )
            change_set = self._wait_for_change_set(name, change_set_name, cancel_event)

            if change_set.is_empty:
                LOG.info('change set "%s" contains no changes, nothing to update', change_set_name)
                self._discard_change_set(name, change_set_name)
                return None
            if change_set.status == ChangeSetStatus.FAILED:
                raise self._failure(
                    UpdateFailedError,
                    current,
                    message=f'change set "{change_set_name}" of stack "{name}" failed: '
                    f"{change_set.status_reason}",
                )

            LOG.info('executing change set "%s" of stack "%s"', change_set_name, name)
            self._call(lambda: self.api.execute_change_set(name, change_set_name))
            if not options.wait:
                return change_set

            final = self.wait_until_terminal(current, cancel_event=cancel_event)
            if final is None or final.status != StackStatus.UPDATE_COMPLETE:
                raise self._failure(UpdateFailedError, final or current)
            LOG.info('updated stack "%s"', name)
            return change_set

    def _wait_for_change_set(
        self, stack_name: str, change_set_name: str, cancel_event: threading.Event = None
    ) -> ChangeSet:
        def _check():
            change_set = self._call(
                lambda: self.api.describe_change_set(stack_name, change_set_name)
            )
            return not change_set.status.is_transitional, change_set

        try:
            return poll_until(_check, self.policy, self.clock, cancel_event)
        except PollTimeout as e:
            raise StackTimeoutError(Stack(name=stack_name), self.policy.timeout, e.elapsed) from e
        except PollCancelled as e:
            raise TaskCancelledError(
                f'stopped waiting for change set "{change_set_name}"', stack_name
            ) from e

    def _discard_change_set(self, stack_name: str, change_set_name: str) -> None:
        try:
            self._call(lambda: self.api.delete_change_set(stack_name, change_set_name))
        except StackError as e:
            LOG.warning('unable to delete empty change set "%s": %s', change_set_name, e)

    def update_nodegroup_stack(self, nodegroup_name: str, template: str, wait: bool = True):
        stack_name = make_nodegroup_stack_name(self.registry.cluster_name, nodegroup_name)
        return self.update(
            UpdateStackOptions(
                stack_name=stack_name,
                change_set_name=make_change_set_name("update-nodegroup"),
                description=f'updating nodegroup "{nodegroup_name}"',
                template_body=template,
                wait=wait,
            )
        )

    # delete

    def delete(
        self,
        stack: Union[Stack, str],
        wait: bool = True,
        cancel_event: threading.Event = None,
    ) -> Optional[Stack]:
        """
        Deletes the stack. A stack which does not exist (anymore) counts as deleted.

        :return: the stack in its deleting state if ``wait`` is false, ``None`` once the stack is gone
        :raises DeleteFailedError: if the deletion failed, with the last observed status and recent events
        """
        ref = stack if isinstance(stack, Stack) else Stack(name=stack)

        with self.in_flight.operation(ref.name, "delete"):
            current = self._describe(ref)
            if current is None or current.status == StackStatus.DELETE_COMPLETE:
                LOG.debug('stack "%s" does not exist, nothing to delete', ref.name)
                return None

            if current.status.is_transitional and current.status != StackStatus.DELETE_IN_PROGRESS:
                LOG.info(
                    'stack "%s" is in %s state, waiting before deleting it',
                    ref.name,
                    current.status,
                )
                current = self.wait_until_terminal(current, cancel_event=cancel_event)
                if current is None:
                    return None

            if current.status != StackStatus.DELETE_IN_PROGRESS:
                LOG.info('deleting stack "%s"', ref.name)
                try:
                    self._call(lambda: self.api.delete_stack(current.identifier))
                except StackNotFoundError:
                    return None
                except TransientApiError as e:
                    raise self._failure(
                        DeleteFailedError,
                        current,
                        message=f'deletion of stack "{ref.name}" failed: {e}',
                    ) from e

            if not wait:
                return dataclasses.replace(current, status=StackStatus.DELETE_IN_PROGRESS)

            final = self.wait_until_terminal(current, cancel_event=cancel_event)
            if final is not None and final.status != StackStatus.DELETE_COMPLETE:
                raise self._failure(DeleteFailedError, final)
            LOG.info('deleted stack "%s"', ref.name)
            return None

    def delete_stack_by_spec(self, stack: Stack) -> Optional[Stack]:
        """Issues the deletion of the stack without waiting for it."""
        return self.delete(stack, wait=False)

    def delete_stack_sync(self, stack: Stack, cancel_event: threading.Event = None) -> None:
        self.delete(stack, wait=True, cancel_event=cancel_event)

    # waiting

    def wait_until_terminal(
        self,
        stack: Stack,
        timeout: float = None,
        cancel_event: threading.Event = None,
    ) -> Optional[Stack]:
        """
        Blocks until the stack reached a terminal status.

        :param timeout: deadline in seconds, defaults to the deadline of the polling policy
        :return: the stack in its terminal status, or ``None`` if it does not exist (anymore)
        :raises StackTimeoutError: if the deadline expired, with the last observed stack
        :raises TaskCancelledError: if the cancel event was set while waiting
        """
        policy = self.policy if timeout is None else self.policy.with_timeout(timeout)

        def _check():
            current = self._describe(stack)
            if current is None:
                return True, None
            LOG.debug('stack "%s" is in %s state', stack.name, current.status)
            return current.status.is_terminal, current

        try:
            return poll_until(_check, policy, self.clock, cancel_event)
        except PollTimeout as e:
            raise StackTimeoutError(e.last_value or stack, policy.timeout, e.elapsed) from e
        except PollCancelled as e:
            raise TaskCancelledError(
                f'stopped waiting for stack "{stack.name}"', stack.name
            ) from e

    # diagnostics

    def _failure(
        self, error_type: type[StackFailedError], stack: Stack, message: str = None
    ) -> StackFailedError:
        """Builds the failure of the stack, attaching its most recent events."""
        try:
            events = self.registry.describe_stack_events(stack)[: constants.MAX_DIAGNOSTIC_EVENTS]
        except StackError as e:
            LOG.warning('unable to describe events of stack "%s": %s', stack.name, e)
            events = []
        audit_events = self.registry.lookup_audit_events(stack)
        error = error_type(stack, events, audit_events, message)
        for event in events:
            if event.status.endswith("FAILED"):
                LOG.warning('stack "%s": %s', stack.name, event)
        return error
