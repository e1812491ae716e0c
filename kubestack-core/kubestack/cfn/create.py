"""Builders of the task trees which create the stacks of a cluster."""

import logging
from typing import Iterable, Optional

from kubestack import constants
from kubestack.cfn.exceptions import StackNotFoundError, TreeConstructionError
from kubestack.cfn.lifecycle import StackLifecycleDriver
from kubestack.cfn.models import NodeGroupType, ResourceSet
from kubestack.cfn.naming import (
    make_cluster_stack_name,
    make_iam_service_account_stack_name,
    make_nodegroup_stack_name,
)
from kubestack.cluster import (
    ClusterConfig,
    ManagedNodeGroupSpec,
    NodeGroupSpec,
    OIDCManager,
    ServiceAccountBinder,
    ServiceAccountSpec,
)
from kubestack.tasks import GenericTask, Task, TaskContext, TaskTree

LOG = logging.getLogger(__name__)


def cluster_tags(cluster: ClusterConfig) -> dict[str, str]:
    return {
        **cluster.tags,
        constants.TAG_CLUSTER_NAME: cluster.name,
        constants.TAG_CREATED_BY: constants.CREATED_BY,
    }


def _check_unique(kind: str, names: Iterable[str]):
    seen = set()
    for name in names:
        if name in seen:
            raise TreeConstructionError(f'{kind} "{name}" is declared more than once')
        seen.add(name)


def _require_resource_set(kind: str, name: str, resource_set: Optional[ResourceSet]) -> ResourceSet:
    if resource_set is None:
        raise TreeConstructionError(f'no resource set given for {kind} "{name}"')
    return resource_set


def new_create_stack_task(
    driver: StackLifecycleDriver,
    description: str,
    stack_name: str,
    resource_set: ResourceSet,
    tags: dict[str, str],
) -> Task:
    # stack polls are not interrupted by cancellation, the remote operation completes either way
    def _create(context: TaskContext):
        driver.create(stack_name, resource_set, tags=tags, wait=True)

    return GenericTask(description, _create)


def new_tasks_to_create_cluster_with_nodegroups(
    driver: StackLifecycleDriver,
    cluster: ClusterConfig,
    cluster_resource_set: ResourceSet,
    nodegroups: list[NodeGroupSpec] = None,
    managed_nodegroups: list[ManagedNodeGroupSpec] = None,
    post_cluster_creation_tasks: list[Task] = None,
) -> TaskTree:
    """
    Builds the tree which creates the cluster stack, then runs the post creation tasks, then creates all nodegroup
    stacks in parallel.
    """
    nodegroups = nodegroups or []
    managed_nodegroups = managed_nodegroups or []
    _check_unique("nodegroup", [ng.name for ng in [*nodegroups, *managed_nodegroups]])

    tree = TaskTree()
    tree.append(
        new_create_stack_task(
            driver,
            f'create cluster control plane "{cluster.name}"',
            make_cluster_stack_name(cluster.name),
            cluster_resource_set,
            cluster_tags(cluster),
        )
    )

    if post_cluster_creation_tasks:
        tree.append(TaskTree(*post_cluster_creation_tasks))

    nodegroup_tasks = TaskTree(parallel=True)
    if nodegroups:
        nodegroup_tasks.append(new_unmanaged_nodegroup_task(driver, cluster, nodegroups))
    if managed_nodegroups:
        nodegroup_tasks.append(new_managed_nodegroup_task(driver, cluster, managed_nodegroups))
    if len(nodegroup_tasks):
        tree.append(nodegroup_tasks)

    return tree


def nodegroup_tags(
    cluster: ClusterConfig, nodegroup: NodeGroupSpec, nodegroup_type: NodeGroupType
) -> dict[str, str]:
    return {
        **cluster_tags(cluster),
        **nodegroup.tags,
        constants.TAG_NODEGROUP_NAME: nodegroup.name,
        constants.TAG_NODEGROUP_TYPE: nodegroup_type.value,
    }


def new_unmanaged_nodegroup_task(
    driver: StackLifecycleDriver, cluster: ClusterConfig, nodegroups: list[NodeGroupSpec]
) -> TaskTree:
    _check_unique("nodegroup", [ng.name for ng in nodegroups])
    tree = TaskTree(parallel=True)
    for nodegroup in nodegroups:
        tree.append(
            new_create_stack_task(
                driver,
                f'create nodegroup "{nodegroup.name}"',
                make_nodegroup_stack_name(cluster.name, nodegroup.name),
                _require_resource_set("nodegroup", nodegroup.name, nodegroup.resource_set),
                nodegroup_tags(cluster, nodegroup, NodeGroupType.UNMANAGED),
            )
        )
    return tree


def new_managed_nodegroup_task(
    driver: StackLifecycleDriver,
    cluster: ClusterConfig,
    nodegroups: list[ManagedNodeGroupSpec],
) -> TaskTree:
    """
    Builds a parallel tree creating the managed nodegroups. Nodegroups which propagate their tags get a second task,
    run once the nodegroup stack is created, which copies the tags to the auto scaling group created by EKS.
    """
    _check_unique("managed nodegroup", [ng.name for ng in nodegroups])
    tree = TaskTree(parallel=True)
    for nodegroup in nodegroups:
        create_task = new_create_stack_task(
            driver,
            f'create managed nodegroup "{nodegroup.name}"',
            make_nodegroup_stack_name(cluster.name, nodegroup.name),
            _require_resource_set("managed nodegroup", nodegroup.name, nodegroup.resource_set),
            nodegroup_tags(cluster, nodegroup, NodeGroupType.MANAGED),
        )
        if not (nodegroup.propagate_asg_tags and nodegroup.tags):
            tree.append(create_task)
            continue

        def _propagate(context: TaskContext, nodegroup=nodegroup):
            asg_names = driver.registry.nodegroups.describe_nodegroup_asg_names(
                cluster.name, nodegroup.name
            )
            propagate_managed_nodegroup_tags_to_asg(driver, nodegroup.name, nodegroup.tags, asg_names)

        tree.append(
            TaskTree(
                create_task,
                GenericTask(
                    f'propagate tags to ASG for managed nodegroup "{nodegroup.name}"', _propagate
                ),
            )
        )
    return tree


def propagate_managed_nodegroup_tags_to_asg(
    driver: StackLifecycleDriver,
    nodegroup_name: str,
    tags: dict[str, str],
    asg_names: list[str],
) -> None:
    """Copies the tags of a managed nodegroup to its auto scaling groups."""
    if not asg_names:
        raise StackNotFoundError(
            nodegroup_name, f'no auto scaling group found for managed nodegroup "{nodegroup_name}"'
        )
    autoscaling = driver.registry.autoscaling
    for asg_name in asg_names:
        if autoscaling.describe_auto_scaling_group(asg_name) is None:
            raise StackNotFoundError(
                nodegroup_name,
                f'auto scaling group "{asg_name}" of managed nodegroup "{nodegroup_name}" does not exist',
            )
        LOG.info(
            'propagating %d tag(s) of managed nodegroup "%s" to ASG "%s"',
            len(tags),
            nodegroup_name,
            asg_name,
        )
        autoscaling.create_or_update_tags(asg_name, tags)


def new_tasks_to_create_iam_service_accounts(
    driver: StackLifecycleDriver,
    cluster: ClusterConfig,
    service_accounts: list[ServiceAccountSpec],
    oidc: OIDCManager,
    binder: ServiceAccountBinder,
) -> TaskTree:
    """
    Builds a parallel tree with one sub-tree per service account, which creates the IAM role stack and then binds
    the role to the kubernetes service account (unless only the role is requested).
    """
    _check_unique("service account", [sa.name_string for sa in service_accounts])
    if service_accounts and not oidc.provider_exists():
        raise TreeConstructionError(
            f'cluster "{cluster.name}" has no OIDC provider, IAM service accounts can not be created'
        )

    tree = TaskTree(parallel=True)
    for sa in service_accounts:
        stack_name = make_iam_service_account_stack_name(cluster.name, sa.namespace, sa.name)
        sub_tree = TaskTree()
        sub_tree.append(
            new_create_stack_task(
                driver,
                f'create IAM role for serviceaccount "{sa.name_string}"',
                stack_name,
                _require_resource_set("service account", sa.name_string, sa.resource_set),
                {
                    **cluster_tags(cluster),
                    **sa.tags,
                    constants.TAG_IAM_SERVICE_ACCOUNT_NAME: sa.name_string,
                },
            )
        )
        if not sa.role_only:

            def _bind(context: TaskContext, sa=sa, stack_name=stack_name):
                stack = driver.registry.describe_stack(stack_name)
                if stack is None:
                    raise StackNotFoundError(stack_name)
                role_arn = stack.outputs.get(constants.IAM_SERVICE_ACCOUNT_ROLE_OUTPUT)
                binder.bind(sa, role_arn)

            sub_tree.append(GenericTask(f'create serviceaccount "{sa.name_string}"', _bind))
        tree.append(sub_tree)
    return tree
