import logging
import threading
from typing import Callable, Optional

import boto3

from kubestack.cfn import create, delete
from kubestack.cfn.api import AwsApis
from kubestack.cfn.delete import CleanupFunc
from kubestack.cfn.lifecycle import (
    InFlightOperations,
    StackLifecycleDriver,
    UpdateStackOptions,
)
from kubestack.cfn.models import (
    ChangeSet,
    NodeGroupStack,
    ResourceSet,
    Stack,
    StackRole,
    StackStatus,
)
from kubestack.cfn.registry import StackRegistry
from kubestack.cfn.wait import DeleteWaitCondition
from kubestack.cluster import (
    ClusterConfig,
    ManagedNodeGroupSpec,
    NodeGroupSpec,
    OIDCManager,
    ServiceAccountBinder,
    ServiceAccountSpec,
)
from kubestack.tasks import Task, TaskTree
from kubestack.utils.backoff import PollingPolicy
from kubestack.utils.sync import Clock

LOG = logging.getLogger(__name__)


class StackCollection:
    """
    Manages the stacks of one cluster: queries them, drives single stacks through their lifecycle, and builds the
    task trees which create and delete them.
    """

    def __init__(
        self,
        apis: AwsApis,
        cluster: ClusterConfig,
        policy: PollingPolicy = None,
        clock: Clock = None,
        in_flight: InFlightOperations = None,
    ):
        self.apis = apis
        self.cluster = cluster
        self.registry = StackRegistry(
            apis.provisioning,
            cluster.name,
            autoscaling=apis.autoscaling,
            audit=apis.audit,
            nodegroups=apis.nodegroups,
        )
        self.driver = StackLifecycleDriver(self.registry, policy, clock, in_flight)

    # queries

    def list_stacks(self) -> list[Stack]:
        return self.registry.list_stacks()

    def list_stacks_matching(self, name_regex: str, *statuses: StackStatus) -> list[Stack]:
        return self.registry.list_stacks_matching(name_regex, *statuses)

    def list_stacks_by_role(self, role: StackRole, *statuses: StackStatus) -> list[Stack]:
        return self.registry.list_stacks_by_role(role, *statuses)

    def describe_stack(self, stack: Stack | str) -> Optional[Stack]:
        return self.registry.describe_stack(stack)

    def describe_cluster_stack(self) -> Stack:
        return self.registry.describe_cluster_stack()

    def get_cluster_stack_if_exists(self) -> Optional[Stack]:
        return self.registry.get_cluster_stack_if_exists()

    def list_nodegroup_stacks_with_statuses(self) -> list[NodeGroupStack]:
        return self.registry.list_nodegroup_stacks_with_statuses()

    def list_iam_service_account_stacks(self) -> list[str]:
        return self.registry.list_iam_service_account_stacks()

    def get_fargate_stack(self) -> Optional[Stack]:
        return self.registry.get_fargate_stack()

    def get_karpenter_stack(self) -> Optional[Stack]:
        return self.registry.get_karpenter_stack()

    # single stacks

    def create_stack(
        self,
        name: str,
        resource_set: ResourceSet,
        tags: dict[str, str] = None,
        parameters: dict[str, str] = None,
        wait: bool = True,
        cancel_event: threading.Event = None,
    ) -> Stack:
        tags = {**create.cluster_tags(self.cluster), **(tags or {})}
        return self.driver.create(name, resource_set, tags, parameters, wait, cancel_event)

    def update_stack(self, options: UpdateStackOptions) -> Optional[ChangeSet]:
        return self.driver.update(options)

    def update_nodegroup_stack(self, nodegroup_name: str, template: str, wait: bool = True):
        return self.driver.update_nodegroup_stack(nodegroup_name, template, wait)

    def delete_stack_by_spec(self, stack: Stack) -> Optional[Stack]:
        return self.driver.delete_stack_by_spec(stack)

    def delete_stack_sync(self, stack: Stack) -> None:
        self.driver.delete_stack_sync(stack)

    def wait_until_created(self, stack: Stack, timeout: float = None) -> Stack:
        return self.driver.wait_until_created(stack, timeout)

    def wait_until_terminal(self, stack: Stack, timeout: float = None) -> Optional[Stack]:
        return self.driver.wait_until_terminal(stack, timeout)

    # creation trees

    def new_tasks_to_create_cluster_with_nodegroups(
        self,
        cluster_resource_set: ResourceSet,
        nodegroups: list[NodeGroupSpec] = None,
        managed_nodegroups: list[ManagedNodeGroupSpec] = None,
        *post_cluster_creation_tasks: Task,
    ) -> TaskTree:
        return create.new_tasks_to_create_cluster_with_nodegroups(
            self.driver,
            self.cluster,
            cluster_resource_set,
            nodegroups,
            managed_nodegroups,
            list(post_cluster_creation_tasks),
        )

    def new_unmanaged_nodegroup_task(self, nodegroups: list[NodeGroupSpec]) -> TaskTree:
        return create.new_unmanaged_nodegroup_task(self.driver, self.cluster, nodegroups)

    def new_managed_nodegroup_task(self, nodegroups: list[ManagedNodeGroupSpec]) -> TaskTree:
        return create.new_managed_nodegroup_task(self.driver, self.cluster, nodegroups)

    def propagate_managed_nodegroup_tags_to_asg(
        self, nodegroup_name: str, tags: dict[str, str], asg_names: list[str]
    ) -> None:
        create.propagate_managed_nodegroup_tags_to_asg(self.driver, nodegroup_name, tags, asg_names)

    def new_tasks_to_create_iam_service_accounts(
        self,
        service_accounts: list[ServiceAccountSpec],
        oidc: OIDCManager,
        binder: ServiceAccountBinder,
    ) -> TaskTree:
        return create.new_tasks_to_create_iam_service_accounts(
            self.driver, self.cluster, service_accounts, oidc, binder
        )

    # deletion trees

    def new_tasks_to_delete_cluster_with_nodegroups(
        self,
        cluster_stack: Optional[Stack],
        nodegroup_stacks: list[NodeGroupStack],
        cluster_operable: bool,
        oidc: Optional[OIDCManager],
        binder: Optional[ServiceAccountBinder],
        wait: bool = False,
        force: bool = False,
        cleanup: CleanupFunc = None,
    ) -> TaskTree:
        return delete.new_tasks_to_delete_cluster_with_nodegroups(
            self.driver,
            cluster_stack,
            nodegroup_stacks,
            cluster_operable,
            oidc,
            binder,
            wait=wait,
            force=force,
            cleanup=cleanup,
        )

    def new_tasks_to_delete_nodegroups(
        self,
        stacks: list[NodeGroupStack],
        should_delete: Callable[[str], bool] = None,
        wait: bool = False,
        cleanup: CleanupFunc = None,
    ) -> TaskTree:
        return delete.new_tasks_to_delete_nodegroups(self.driver, stacks, should_delete, wait, cleanup)

    def new_tasks_to_delete_iam_service_accounts(
        self,
        service_accounts: list[str],
        binder: Optional[ServiceAccountBinder],
        wait: bool = False,
        cleanup: CleanupFunc = None,
    ) -> TaskTree:
        return delete.new_tasks_to_delete_iam_service_accounts(
            self.driver, service_accounts, binder, wait, cleanup=cleanup
        )

    def new_tasks_to_delete_oidc_provider_with_iam_service_accounts(
        self,
        oidc: Optional[OIDCManager],
        binder: Optional[ServiceAccountBinder],
        force: bool = False,
        cleanup: CleanupFunc = None,
    ) -> TaskTree:
        return delete.new_tasks_to_delete_oidc_provider_with_iam_service_accounts(
            self.driver, oidc, binder, force, cleanup
        )

    def new_task_to_delete_addon_iam(
        self, wait: bool = False, cleanup: CleanupFunc = None
    ) -> TaskTree:
        return delete.new_task_to_delete_addon_iam(self.driver, wait, cleanup=cleanup)

    def new_task_to_delete_unowned_nodegroup(
        self, nodegroup: str, wait_condition: DeleteWaitCondition = None
    ) -> Task:
        return delete.new_task_to_delete_unowned_nodegroup(
            self.driver, self.cluster.name, nodegroup, wait_condition
        )

    def delete_tasks_for_deprecated_stacks(self) -> TaskTree:
        return delete.delete_tasks_for_deprecated_stacks(self.driver)


def connect(
    cluster: ClusterConfig,
    endpoint_url: str = None,
    session: boto3.session.Session = None,
    policy: PollingPolicy = None,
) -> StackCollection:
    """Creates the stack collection of the cluster, backed by boto3 clients."""
    apis = AwsApis.create(region_name=cluster.region, endpoint_url=endpoint_url, session=session)
    LOG.debug('managing stacks of cluster "%s"', cluster.name)
    return StackCollection(apis, cluster, policy=policy)
