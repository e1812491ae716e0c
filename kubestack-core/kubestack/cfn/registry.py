import logging
import re
from typing import Optional, Union

from kubestack import constants
from kubestack.cfn import naming
from kubestack.cfn.api import AuditApi, AutoScalingApi, NodeGroupApi, ProvisioningApi
from kubestack.cfn.exceptions import StackNotFoundError
from kubestack.cfn.models import (
    ALL_STATUSES_EXCEPT_DELETED,
    AuditEvent,
    ChangeSet,
    NodeGroupStack,
    NodeGroupType,
    Stack,
    StackEvent,
    StackInfo,
    StackRole,
    StackStatus,
    get_cluster_name,
    get_nodegroup_name,
    get_nodegroup_type,
    get_service_account_name,
    stack_role,
)

LOG = logging.getLogger(__name__)

StackRef = Union[Stack, str]


def _identifier(stack: StackRef) -> str:
    return stack.identifier if isinstance(stack, Stack) else stack


class StackRegistry:
    """
    Read-only view of the stacks owned by a cluster. Lookups of a single stack return ``None`` instead of raising
    when the stack does not exist, which the lifecycle driver uses to implement idempotent operations.
    """

    def __init__(
        self,
        api: ProvisioningApi,
        cluster_name: str,
        autoscaling: AutoScalingApi = None,
        audit: AuditApi = None,
        nodegroups: NodeGroupApi = None,
    ):
        self.api = api
        self.cluster_name = cluster_name
        self.autoscaling = autoscaling
        self.audit = audit
        self.nodegroups = nodegroups

    # listing

    def list_stacks_with_statuses(self, *statuses: StackStatus) -> list[Stack]:
        """Returns the summaries of all stacks (of any cluster) with one of the given statuses."""
        return self.api.list_stacks(list(statuses or ALL_STATUSES_EXCEPT_DELETED))

    def list_stacks_matching(self, name_regex: str, *statuses: StackStatus) -> list[Stack]:
        """
        Returns the fully described stacks whose name matches the regex, and which have one of the given statuses
        (by default: any status except ``DELETE_COMPLETE``).
        """
        pattern = re.compile(name_regex)
        stacks = []
        for summary in self.list_stacks_with_statuses(*statuses):
            if not pattern.search(summary.name):
                continue
            # stacks can disappear between the two calls
            if stack := self.describe_stack(summary.identifier):
                stacks.append(stack)
        return stacks

    def list_stacks(self) -> list[Stack]:
        """Returns all stacks of the cluster."""
        return self.list_stacks_matching(naming.cluster_stacks_regex(self.cluster_name))

    def list_stacks_by_role(self, role: StackRole, *statuses: StackStatus) -> list[Stack]:
        stacks = self.list_stacks_matching(naming.cluster_stacks_regex(self.cluster_name), *statuses)
        return [stack for stack in stacks if stack_role(stack, self.cluster_name) == role]

    def list_cluster_stack_names(self) -> list[str]:
        """Returns the names of the cluster stacks of all clusters."""
        pattern = re.compile(
            f"^{re.escape(constants.STACK_NAME_PREFIX)}-.+-{constants.CLUSTER_STACK_SUFFIX}$"
        )
        return [s.name for s in self.list_stacks_with_statuses() if pattern.match(s.name)]

    def has_cluster_stack_from_list(self, cluster_stack_names: list[str]) -> bool:
        return naming.make_cluster_stack_name(self.cluster_name) in cluster_stack_names

    # single stacks

    def describe_stack(self, stack: StackRef) -> Optional[Stack]:
        """Returns the current state of the stack, or ``None`` if it does not exist."""
        try:
            return self.api.describe_stack(_identifier(stack))
        except StackNotFoundError:
            return None

    def describe_cluster_stack_if_exists(self) -> Optional[Stack]:
        return self._describe_active(naming.make_cluster_stack_name(self.cluster_name))

    def describe_cluster_stack(self) -> Stack:
        if stack := self.describe_cluster_stack_if_exists():
            return stack
        raise StackNotFoundError(naming.make_cluster_stack_name(self.cluster_name))

    def get_cluster_stack_if_exists(self) -> Optional[Stack]:
        """
        Like ``describe_cluster_stack_if_exists``, but also finds cluster stacks which were renamed or created by
        other tools, as long as they carry the cluster name tag.
        """
        if stack := self.describe_cluster_stack_if_exists():
            return stack
        pattern = re.compile(f"-{constants.CLUSTER_STACK_SUFFIX}$")
        for summary in self.list_stacks_with_statuses():
            if not pattern.search(summary.name):
                continue
            stack = self.describe_stack(summary.identifier)
            if stack and get_cluster_name(stack) == self.cluster_name:
                return stack
        return None

    def describe_nodegroup_stack(self, nodegroup_name: str) -> Optional[Stack]:
        return self._describe_active(
            naming.make_nodegroup_stack_name(self.cluster_name, nodegroup_name)
        )

    def get_fargate_stack(self) -> Optional[Stack]:
        return self._describe_active(naming.make_fargate_stack_name(self.cluster_name))

    def get_karpenter_stack(self) -> Optional[Stack]:
        return self._describe_active(naming.make_karpenter_stack_name(self.cluster_name))

    def _describe_active(self, name: str) -> Optional[Stack]:
        stack = self.describe_stack(name)
        if stack is None or stack.status == StackStatus.DELETE_COMPLETE:
            return None
        return stack

    # nodegroups

    def list_nodegroup_stacks(self) -> list[Stack]:
        return self.list_stacks_by_role(StackRole.NODEGROUP)

    def list_nodegroup_stacks_with_statuses(self) -> list[NodeGroupStack]:
        return [
            NodeGroupStack(
                stack=stack,
                nodegroup_name=get_nodegroup_name(stack, self.cluster_name),
                type=get_nodegroup_type(stack),
            )
            for stack in self.list_nodegroup_stacks()
        ]

    def describe_nodegroup_stacks_and_resources(self) -> dict[str, StackInfo]:
        infos = {}
        for stack in self.list_nodegroup_stacks():
            resources = self.api.describe_stack_resources(stack.identifier)
            infos[stack.name] = StackInfo(stack=stack, resources=resources)
        return infos

    def get_nodegroup_stack_type(self, nodegroup_name: str) -> NodeGroupType:
        stack = self.describe_nodegroup_stack(nodegroup_name)
        if stack is None:
            raise StackNotFoundError(
                naming.make_nodegroup_stack_name(self.cluster_name, nodegroup_name)
            )
        return get_nodegroup_type(stack)

    def get_managed_nodegroup_template(self, nodegroup_name: str) -> str:
        if self.get_nodegroup_stack_type(nodegroup_name) != NodeGroupType.MANAGED:
            raise ValueError(f'nodegroup "{nodegroup_name}" is not a managed nodegroup')
        return self.get_stack_template(
            naming.make_nodegroup_stack_name(self.cluster_name, nodegroup_name)
        )

    def get_unmanaged_nodegroup_autoscaling_group_name(self, stack: Stack) -> str:
        for resource in self.api.describe_stack_resources(stack.identifier):
            if resource.resource_type == "AWS::AutoScaling::AutoScalingGroup":
                if resource.physical_id:
                    return resource.physical_id
        raise StackNotFoundError(
            stack.name, f'no auto scaling group found in nodegroup stack "{stack.name}"'
        )

    def get_autoscaling_group_name(self, stack: Stack) -> str:
        match get_nodegroup_type(stack):
            case NodeGroupType.MANAGED:
                names = self.nodegroups.describe_nodegroup_asg_names(
                    self.cluster_name, get_nodegroup_name(stack, self.cluster_name)
                )
                if not names:
                    raise StackNotFoundError(
                        stack.name, f'no auto scaling group found for nodegroup stack "{stack.name}"'
                    )
                return names[0]
            case _:
                return self.get_unmanaged_nodegroup_autoscaling_group_name(stack)

    def get_autoscaling_group(self, name: str) -> Optional[dict]:
        return self.autoscaling.describe_auto_scaling_group(name)

    # IAM

    def describe_iam_service_account_stacks(self) -> list[Stack]:
        return self.list_stacks_by_role(StackRole.IAM_SERVICE_ACCOUNT)

    def list_iam_service_account_stacks(self) -> list[str]:
        """Returns the ``namespace/name`` of every service account which has a stack."""
        return [
            get_service_account_name(stack)
            for stack in self.describe_iam_service_account_stacks()
            if get_service_account_name(stack)
        ]

    def get_iam_addons_stacks(self) -> list[Stack]:
        return self.list_stacks_by_role(StackRole.ADDON_IAM)

    # diagnostics

    def get_stack_template(self, stack_name: str) -> str:
        return self.api.get_template(stack_name)

    def describe_stack_events(self, stack: StackRef) -> list[StackEvent]:
        return self.api.describe_stack_events(_identifier(stack))

    def describe_stack_change_set(self, stack: StackRef, change_set_name: str) -> ChangeSet:
        name = stack.name if isinstance(stack, Stack) else stack
        return self.api.describe_change_set(name, change_set_name)

    def lookup_audit_events(self, stack: Stack) -> list[AuditEvent]:
        """Returns the audit trail of the stack. Only used for diagnostics, so errors are logged and ignored."""
        if self.audit is None:
            return []
        try:
            return self.audit.lookup_events(stack.identifier)
        except Exception as e:
            LOG.warning("unable to look up audit events of stack %s: %s", stack.name, e)
            return []

    @staticmethod
    def stack_status_is_not_transitional(stack: Stack) -> bool:
        return stack.status is not None and stack.status.is_terminal
