from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from kubestack import constants
from kubestack.cfn import naming


class StackStatus(str, Enum):
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_FAILED = "CREATE_FAILED"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_FAILED = "DELETE_FAILED"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"

    @property
    def is_transitional(self) -> bool:
        return self.value.endswith("_IN_PROGRESS")

    @property
    def is_terminal(self) -> bool:
        return not self.is_transitional

    @property
    def is_failed(self) -> bool:
        """Terminal states from which the stack did not reach the requested state."""
        return self in FAILED_STATUSES

    @property
    def is_complete(self) -> bool:
        """Terminal states in which the stack is usable."""
        return self in (
            StackStatus.CREATE_COMPLETE,
            StackStatus.UPDATE_COMPLETE,
            StackStatus.UPDATE_ROLLBACK_COMPLETE,
            StackStatus.IMPORT_COMPLETE,
            StackStatus.IMPORT_ROLLBACK_COMPLETE,
        )

    def __str__(self):
        return self.value


FAILED_STATUSES = (
    StackStatus.CREATE_FAILED,
    StackStatus.ROLLBACK_FAILED,
    StackStatus.ROLLBACK_COMPLETE,
    StackStatus.DELETE_FAILED,
    StackStatus.UPDATE_FAILED,
    StackStatus.UPDATE_ROLLBACK_FAILED,
    StackStatus.IMPORT_ROLLBACK_FAILED,
)

# every status except DELETE_COMPLETE, used as the default filter when listing stacks
ALL_STATUSES_EXCEPT_DELETED = tuple(s for s in StackStatus if s != StackStatus.DELETE_COMPLETE)


class StackRole(str, Enum):
    CLUSTER = "cluster"
    NODEGROUP = "nodegroup"
    IAM_SERVICE_ACCOUNT = "iamserviceaccount"
    ADDON_IAM = "addon-iam"
    FARGATE = "fargate"
    KARPENTER = "karpenter"
    UNKNOWN = "unknown"


class NodeGroupType(str, Enum):
    MANAGED = "managed"
    UNMANAGED = "unmanaged"


class ChangeSetStatus(str, Enum):
    CREATE_PENDING = "CREATE_PENDING"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    DELETE_PENDING = "DELETE_PENDING"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    FAILED = "FAILED"

    @property
    def is_transitional(self) -> bool:
        return self.value.endswith(("_PENDING", "_IN_PROGRESS"))


@dataclass
class StackResource:
    logical_id: str
    resource_type: str
    physical_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class Stack:
    """A remotely provisioned group of resources, tracked as one lifecycle unit."""

    name: str
    stack_id: Optional[str] = None
    status: Optional[StackStatus] = None
    status_reason: Optional[str] = None
    tags: dict[str, str] = field(default_factory=dict)
    parameters: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    resources: list[StackResource] = field(default_factory=list)
    template_body: Optional[str] = None
    capabilities: list[str] = field(default_factory=list)
    creation_time: Optional[datetime] = None

    @property
    def role(self) -> StackRole:
        return stack_role(self)

    @property
    def identifier(self) -> str:
        """The stack id if known (unique over time), otherwise the name."""
        return self.stack_id or self.name

    def __str__(self):
        return self.name


@dataclass
class NodeGroupStack:
    stack: Stack
    nodegroup_name: str
    type: NodeGroupType

    @property
    def name(self) -> str:
        return self.stack.name


@dataclass
class Change:
    action: str
    logical_id: str
    resource_type: Optional[str] = None
    replacement: Optional[str] = None


@dataclass
class ChangeSet:
    """A named, previewed diff against an existing stack."""

    name: str
    stack_name: str
    change_set_id: Optional[str] = None
    status: Optional[ChangeSetStatus] = None
    status_reason: Optional[str] = None
    execution_status: Optional[str] = None
    changes: list[Change] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        if self.status == ChangeSetStatus.FAILED and is_empty_change_set_reason(self.status_reason):
            return True
        return self.status == ChangeSetStatus.CREATE_COMPLETE and not self.changes


def is_empty_change_set_reason(reason: Optional[str]) -> bool:
    reason = (reason or "").lower()
    return "didn't contain changes" in reason or "no updates are to be performed" in reason


@dataclass
class StackInfo:
    """Read-only snapshot of a stack and its resources, regenerated on each query."""

    stack: Stack
    resources: list[StackResource] = field(default_factory=list)


@dataclass
class StackEvent:
    timestamp: datetime
    logical_id: str
    resource_type: str
    status: str
    status_reason: Optional[str] = None
    physical_id: Optional[str] = None

    def __str__(self):
        reason = f" ({self.status_reason})" if self.status_reason else ""
        return f"{self.timestamp.isoformat()} {self.resource_type}/{self.logical_id}: {self.status}{reason}"


@dataclass
class AuditEvent:
    timestamp: datetime
    event_name: str
    username: Optional[str] = None
    event_id: Optional[str] = None


class ResourceSet(Protocol):
    """A synthesized template for a stack. Rendering the template happens outside of kubestack."""

    def render_json(self) -> str: ...

    def with_iam(self) -> bool: ...

    def with_named_iam(self) -> bool: ...


@dataclass
class TemplateResourceSet:
    """A resource set wrapping an already rendered template."""

    template: dict | str
    iam: bool = False
    named_iam: bool = False

    def render_json(self) -> str:
        if isinstance(self.template, str):
            return self.template
        return json.dumps(self.template)

    def with_iam(self) -> bool:
        return self.iam

    def with_named_iam(self) -> bool:
        return self.named_iam


# role-specific accessors, pure functions over the stack tags and name


def _name_suffix(stack: Stack, cluster_name: Optional[str] = None) -> Optional[str]:
    """
    Returns the part of the stack name which follows the stack name prefix of its cluster, e.g. ``nodegroup-ng-1``
    for ``kubestack-dev-nodegroup-ng-1``. ``None`` if the cluster is unknown or the name has a different prefix.
    """
    cluster_name = cluster_name or get_cluster_name(stack)
    if not cluster_name:
        return None
    prefix = naming.make_stack_name_prefix(cluster_name)
    name = stack.name or ""
    if not name.startswith(prefix):
        return None
    return name[len(prefix) :]


def _role_from_suffix(suffix: str) -> StackRole:
    if suffix.startswith(f"{constants.NODEGROUP_STACK_INFIX}-"):
        return StackRole.NODEGROUP
    if suffix.startswith(f"{constants.IAM_SERVICE_ACCOUNT_STACK_INFIX}-"):
        return StackRole.IAM_SERVICE_ACCOUNT
    if suffix.startswith(f"{constants.ADDON_STACK_INFIX}-"):
        return StackRole.ADDON_IAM
    if suffix == constants.CLUSTER_STACK_SUFFIX:
        return StackRole.CLUSTER
    if suffix == constants.FARGATE_STACK_SUFFIX:
        return StackRole.FARGATE
    if suffix == constants.KARPENTER_STACK_SUFFIX:
        return StackRole.KARPENTER
    return StackRole.UNKNOWN


def stack_role(stack: Stack, cluster_name: Optional[str] = None) -> StackRole:
    """
    Classifies the stack by its role tags. Untagged stacks are classified by the part of their name following the
    cluster prefix, so that a cluster name never affects the role. Without a known cluster, the name is searched for
    the role infixes and suffixes.
    """
    tags = stack.tags or {}
    if constants.TAG_NODEGROUP_NAME in tags:
        return StackRole.NODEGROUP
    if constants.TAG_IAM_SERVICE_ACCOUNT_NAME in tags:
        return StackRole.IAM_SERVICE_ACCOUNT
    if constants.TAG_ADDON_NAME in tags:
        return StackRole.ADDON_IAM

    suffix = _name_suffix(stack, cluster_name)
    if suffix is not None:
        return _role_from_suffix(suffix)

    name = stack.name or ""
    if f"-{constants.NODEGROUP_STACK_INFIX}-" in name:
        return StackRole.NODEGROUP
    if f"-{constants.IAM_SERVICE_ACCOUNT_STACK_INFIX}-" in name:
        return StackRole.IAM_SERVICE_ACCOUNT
    if f"-{constants.ADDON_STACK_INFIX}-" in name:
        return StackRole.ADDON_IAM
    if name.endswith(f"-{constants.CLUSTER_STACK_SUFFIX}"):
        return StackRole.CLUSTER
    if name.endswith(f"-{constants.FARGATE_STACK_SUFFIX}"):
        return StackRole.FARGATE
    if name.endswith(f"-{constants.KARPENTER_STACK_SUFFIX}"):
        return StackRole.KARPENTER
    return StackRole.UNKNOWN


def get_cluster_name(stack: Stack) -> Optional[str]:
    tags = stack.tags or {}
    return tags.get(constants.TAG_CLUSTER_NAME) or tags.get(constants.TAG_OLD_CLUSTER_NAME)


def get_nodegroup_name(stack: Stack, cluster_name: Optional[str] = None) -> str:
    """Returns the nodegroup name of a nodegroup stack, or an empty string for any other stack."""
    if name := (stack.tags or {}).get(constants.TAG_NODEGROUP_NAME):
        return name
    infix = f"{constants.NODEGROUP_STACK_INFIX}-"
    suffix = _name_suffix(stack, cluster_name)
    if suffix is not None:
        return suffix[len(infix) :] if suffix.startswith(infix) else ""
    if f"-{infix}" in stack.name:
        return stack.name.split(f"-{infix}", 1)[1]
    return ""


def get_nodegroup_type(stack: Stack) -> NodeGroupType:
    """Stacks without a type tag were created before managed nodegroups existed, and are unmanaged."""
    value = (stack.tags or {}).get(constants.TAG_NODEGROUP_TYPE)
    if not value:
        return NodeGroupType.UNMANAGED
    return NodeGroupType(value)


def get_iam_addon_name(stack: Stack, cluster_name: Optional[str] = None) -> str:
    if name := (stack.tags or {}).get(constants.TAG_ADDON_NAME):
        return name
    if stack_role(stack, cluster_name) != StackRole.ADDON_IAM:
        return ""
    infix = f"{constants.ADDON_STACK_INFIX}-"
    suffix = _name_suffix(stack, cluster_name)
    if suffix is not None:
        return suffix[len(infix) :]
    return stack.name.split(f"-{infix}", 1)[1]


def get_service_account_name(stack: Stack) -> str:
    """Returns the ``namespace/name`` of the service account an IAM service account stack belongs to."""
    return (stack.tags or {}).get(constants.TAG_IAM_SERVICE_ACCOUNT_NAME, "")
