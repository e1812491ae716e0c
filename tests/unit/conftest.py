import copy
import threading

import pytest

from kubestack import constants
from kubestack.cfn.api import AuditApi, AutoScalingApi, AwsApis, NodeGroupApi, ProvisioningApi
from kubestack.cfn.exceptions import StackInProgressError, StackNotFoundError
from kubestack.cfn.lifecycle import InFlightOperations, StackLifecycleDriver
from kubestack.cfn.manager import StackCollection
from kubestack.cfn.models import (
    Change,
    ChangeSet,
    ChangeSetStatus,
    Stack,
    StackEvent,
    StackStatus,
)
from kubestack.cfn.naming import (
    make_cluster_stack_name,
    make_iam_service_account_stack_name,
    make_nodegroup_stack_name,
)
from kubestack.cfn.registry import StackRegistry
from kubestack.cluster import ClusterConfig
from kubestack.utils.backoff import PollingPolicy

TEST_AWS_ACCESS_KEY_ID = "test"
TEST_AWS_SECRET_ACCESS_KEY = "test"
TEST_AWS_REGION_NAME = "us-east-1"

CLUSTER_NAME = "test"


@pytest.fixture(autouse=True)
def set_boto_test_credentials_and_region(monkeypatch):
    """
    Automatically sets the default credentials and region for all unit tests.
    """
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", TEST_AWS_ACCESS_KEY_ID)
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", TEST_AWS_SECRET_ACCESS_KEY)
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_AWS_REGION_NAME)


class FakeClock:
    """A clock which only advances when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    def wait(self, event: threading.Event, seconds: float) -> bool:
        if event.is_set():
            return True
        self.sleep(seconds)
        return event.is_set()


class CallLog:
    """Records the mutating calls of all fakes, in the order in which they were issued."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def record(self, operation: str, name: str):
        with self._lock:
            self.calls.append((operation, name))

    def index(self, operation: str, name: str) -> int:
        with self._lock:
            return self.calls.index((operation, name))

    def names(self, operation: str) -> list[str]:
        with self._lock:
            return [name for op, name in self.calls if op == operation]


class FakeProvisioningApi(ProvisioningApi):
    """
    In-memory stack inventory. Every stack has a queue of statuses, one of which is applied on each describe call,
    which lets tests script the transitions a stack goes through while it is polled.
    """

    def __init__(self, call_log: CallLog):
        self.call_log = call_log
        self.stacks: dict[str, Stack] = {}
        self.templates: dict[str, str] = {}
        self.status_queues: dict[str, list[StackStatus]] = {}
        self.events: dict[str, list[StackEvent]] = {}
        self.change_sets: dict[tuple[str, str], ChangeSet] = {}
        # outcome of the next change set created for a stack, defaults to a non-empty change set
        self.change_set_outcomes: dict[str, ChangeSet] = {}
        # status queue applied once a deletion / creation / update is issued
        self.delete_scripts: dict[str, list[StackStatus]] = {}
        self.create_scripts: dict[str, list[StackStatus]] = {}
        self.update_scripts: dict[str, list[StackStatus]] = {}
        # outputs of stacks once created
        self.create_outputs: dict[str, dict[str, str]] = {}
        # errors raised by the next calls, keyed by (operation, stack name)
        self.errors: dict[tuple[str, str], list[Exception]] = {}
        self.describe_count = 0
        self._lock = threading.RLock()

    def add_stack(
        self,
        name: str,
        status: StackStatus = StackStatus.CREATE_COMPLETE,
        tags: dict[str, str] = None,
        template: str = '{"Resources": {}}',
        outputs: dict[str, str] = None,
    ) -> Stack:
        with self._lock:
            stack = Stack(
                name=name,
                stack_id=f"arn:aws:cloudformation:us-east-1:000000000000:stack/{name}/1",
                status=status,
                tags=dict(tags or {}),
                outputs=dict(outputs or {}),
                template_body=template,
            )
            self.stacks[name] = stack
            self.templates[name] = template
            return copy.deepcopy(stack)

    def script(self, name: str, *statuses: StackStatus):
        with self._lock:
            self.status_queues[name] = list(statuses)

    def _raise_scripted_error(self, operation: str, name: str):
        errors = self.errors.get((operation, name))
        if errors:
            raise errors.pop(0)

    def _lookup(self, name_or_id: str) -> Stack:
        for stack in self.stacks.values():
            if name_or_id in (stack.name, stack.stack_id):
                return stack
        raise StackNotFoundError(name_or_id, f"Stack with id {name_or_id} does not exist")

    def create_stack(self, name, template_body, tags, parameters, capabilities) -> str:
        with self._lock:
            self._raise_scripted_error("create_stack", name)
            existing = self.stacks.get(name)
            if existing and existing.status != StackStatus.DELETE_COMPLETE:
                raise StackInProgressError(name, f"Stack [{name}] already exists")
            self.call_log.record("create_stack", name)
            self.add_stack(name, StackStatus.CREATE_IN_PROGRESS, tags, template_body)
            self.stacks[name].parameters = dict(parameters or {})
            self.stacks[name].capabilities = list(capabilities or [])
            self.stacks[name].outputs = dict(self.create_outputs.get(name, {}))
            self.status_queues[name] = list(
                self.create_scripts.get(name, [StackStatus.CREATE_COMPLETE])
            )
            return self.stacks[name].stack_id

    def describe_stack(self, name_or_id: str) -> Stack:
        with self._lock:
            self.describe_count += 1
            stack = self._lookup(name_or_id)
            self._raise_scripted_error("describe_stack", stack.name)
            if queue := self.status_queues.get(stack.name):
                stack.status = queue.pop(0)
            if stack.status == StackStatus.DELETE_COMPLETE:
                del self.stacks[stack.name]
                raise StackNotFoundError(name_or_id, f"Stack with id {name_or_id} does not exist")
            return copy.deepcopy(stack)

    def list_stacks(self, status_filters=None) -> list[Stack]:
        with self._lock:
            return [
                Stack(name=stack.name, stack_id=stack.stack_id, status=stack.status)
                for stack in self.stacks.values()
                if not status_filters or stack.status in status_filters
            ]

    def delete_stack(self, name_or_id: str) -> None:
        with self._lock:
            stack = self._lookup(name_or_id)
            self._raise_scripted_error("delete_stack", stack.name)
            self.call_log.record("delete_stack", stack.name)
            stack.status = StackStatus.DELETE_IN_PROGRESS
            self.status_queues[stack.name] = list(
                self.delete_scripts.get(stack.name, [StackStatus.DELETE_COMPLETE])
            )

    def describe_stack_events(self, name_or_id: str) -> list[StackEvent]:
        name = name_or_id.split("/")[1] if name_or_id.startswith("arn:") else name_or_id
        with self._lock:
            return list(self.events.get(name, []))

    def describe_stack_resources(self, name_or_id: str):
        with self._lock:
            return list(self._lookup(name_or_id).resources)

    def get_template(self, name_or_id: str) -> str:
        with self._lock:
            return self.templates[self._lookup(name_or_id).name]

    def create_change_set(
        self,
        stack_name,
        change_set_name,
        template_body,
        tags,
        parameters,
        capabilities,
        description="",
    ):
        with self._lock:
            self.call_log.record("create_change_set", stack_name)
            outcome = self.change_set_outcomes.get(stack_name) or ChangeSet(
                name=change_set_name,
                stack_name=stack_name,
                status=ChangeSetStatus.CREATE_COMPLETE,
                changes=[Change(action="Modify", logical_id="Resource")],
            )
            outcome.name = change_set_name
            self.change_sets[(stack_name, change_set_name)] = outcome
            self.templates[stack_name] = template_body
            return f"{stack_name}/{change_set_name}"

    def describe_change_set(self, stack_name, change_set_name) -> ChangeSet:
        with self._lock:
            return copy.deepcopy(self.change_sets[(stack_name, change_set_name)])

    def execute_change_set(self, stack_name, change_set_name) -> None:
        with self._lock:
            self.call_log.record("execute_change_set", stack_name)
            self.stacks[stack_name].status = StackStatus.UPDATE_IN_PROGRESS
            self.status_queues[stack_name] = list(
                self.update_scripts.get(stack_name, [StackStatus.UPDATE_COMPLETE])
            )

    def delete_change_set(self, stack_name, change_set_name) -> None:
        with self._lock:
            self.call_log.record("delete_change_set", stack_name)
            self.change_sets.pop((stack_name, change_set_name), None)


class FakeAutoScalingApi(AutoScalingApi):
    def __init__(self, call_log: CallLog):
        self.call_log = call_log
        self.groups: dict[str, dict] = {}

    def describe_auto_scaling_group(self, name: str):
        return self.groups.get(name)

    def create_or_update_tags(self, name: str, tags: dict[str, str]) -> None:
        self.call_log.record("create_or_update_tags", name)
        self.groups[name].setdefault("Tags", {}).update(tags)


class FakeAuditApi(AuditApi):
    def __init__(self):
        self.events = []

    def lookup_events(self, stack_id: str):
        return list(self.events)


class FakeNodeGroupApi(NodeGroupApi):
    def __init__(self, call_log: CallLog):
        self.call_log = call_log
        self.nodegroups: dict[str, list[str]] = {}
        # number of existence checks before a deleted nodegroup disappears
        self.deletion_polls = 1
        self._remaining: dict[str, int] = {}

    def delete_nodegroup(self, cluster_name: str, nodegroup_name: str) -> None:
        self.call_log.record("delete_nodegroup", nodegroup_name)
        self._remaining[nodegroup_name] = self.deletion_polls

    def nodegroup_exists(self, cluster_name: str, nodegroup_name: str) -> bool:
        if nodegroup_name not in self.nodegroups:
            return False
        if nodegroup_name in self._remaining:
            self._remaining[nodegroup_name] -= 1
            if self._remaining[nodegroup_name] < 0:
                del self.nodegroups[nodegroup_name]
                return False
        return True

    def describe_nodegroup_asg_names(self, cluster_name: str, nodegroup_name: str):
        return list(self.nodegroups.get(nodegroup_name, []))


class FakeOIDCManager:
    def __init__(self, call_log: CallLog, exists: bool = True):
        self.call_log = call_log
        self.exists = exists

    def provider_exists(self) -> bool:
        return self.exists

    def delete_provider(self) -> None:
        self.call_log.record("delete_provider", "oidc")
        self.exists = False


class FakeServiceAccountBinder:
    def __init__(self, call_log: CallLog):
        self.call_log = call_log
        self.bound = {}

    def bind(self, service_account, role_arn):
        self.call_log.record("bind", service_account.name_string)
        self.bound[service_account.name_string] = role_arn

    def unbind(self, namespace: str, name: str) -> None:
        self.call_log.record("unbind", f"{namespace}/{name}")
        self.bound.pop(f"{namespace}/{name}", None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def provisioning(call_log):
    return FakeProvisioningApi(call_log)


@pytest.fixture
def apis(provisioning, call_log):
    return AwsApis(
        provisioning=provisioning,
        autoscaling=FakeAutoScalingApi(call_log),
        audit=FakeAuditApi(),
        nodegroups=FakeNodeGroupApi(call_log),
    )


@pytest.fixture
def policy():
    return PollingPolicy(initial_interval=1, multiplier=2, max_interval=4, timeout=60)


@pytest.fixture
def registry(apis):
    return StackRegistry(
        apis.provisioning,
        CLUSTER_NAME,
        autoscaling=apis.autoscaling,
        audit=apis.audit,
        nodegroups=apis.nodegroups,
    )


@pytest.fixture
def driver(registry, policy, clock):
    return StackLifecycleDriver(registry, policy, clock, InFlightOperations())


@pytest.fixture
def collection(apis, policy, clock):
    return StackCollection(
        apis, ClusterConfig(name=CLUSTER_NAME), policy, clock, InFlightOperations()
    )


@pytest.fixture
def oidc(call_log):
    return FakeOIDCManager(call_log)


@pytest.fixture
def binder(call_log):
    return FakeServiceAccountBinder(call_log)


@pytest.fixture
def cluster_stacks(provisioning):
    """Creates a cluster stack, two nodegroup stacks and a service account stack."""
    cluster_tags = {constants.TAG_CLUSTER_NAME: CLUSTER_NAME}
    provisioning.add_stack(make_cluster_stack_name(CLUSTER_NAME), tags=cluster_tags)
    for nodegroup in ("n1", "n2"):
        provisioning.add_stack(
            make_nodegroup_stack_name(CLUSTER_NAME, nodegroup),
            tags={
                **cluster_tags,
                constants.TAG_NODEGROUP_NAME: nodegroup,
                constants.TAG_NODEGROUP_TYPE: "managed",
            },
        )
    provisioning.add_stack(
        make_iam_service_account_stack_name(CLUSTER_NAME, "default", "s1"),
        tags={**cluster_tags, constants.TAG_IAM_SERVICE_ACCOUNT_NAME: "default/s1"},
    )
    return provisioning

