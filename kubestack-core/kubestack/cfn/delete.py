"""
Builders of the task trees which delete the stacks of a cluster, honoring the order of their dependencies:

1. IAM service account and addon IAM stacks, which signal a wait condition once deleted
2. the OIDC provider, once the wait condition completed
3. the nodegroup stacks, in parallel
4. the cluster stack

With ``force``, the first two stages run concurrently with the nodegroup deletions, and the OIDC provider is
deleted even if its dependencies timed out or failed. Every deletion is still attempted and reported.
"""

import logging
from typing import Callable, Optional

from kubestack.cfn.exceptions import StackTimeoutError, TaskCancelledError
from kubestack.cfn.lifecycle import StackLifecycleDriver
from kubestack.cfn.models import (
    NodeGroupStack,
    NodeGroupType,
    Stack,
    get_iam_addon_name,
    get_service_account_name,
)
from kubestack.cfn.naming import deprecated_stacks_regex
from kubestack.cfn.wait import DeleteWaitCondition
from kubestack.cluster import OIDCManager, ServiceAccountBinder
from kubestack.constants import DEPRECATED_STACK_SUFFIXES
from kubestack.tasks import GenericTask, Task, TaskContext, TaskResult, TaskStatus, TaskTree
from kubestack.utils.sync import PollTimeout, poll_until

LOG = logging.getLogger(__name__)

# receives the error of a deletion (None on success) and the name of the deleted resource
CleanupFunc = Callable[[Optional[Exception], str], None]


def outcome_error(result: TaskResult) -> Optional[Exception]:
    """Returns the error of a task result, tasks which never ran get an error as well."""
    if result.ok:
        return None
    if result.error is not None:
        return result.error
    if result.status == TaskStatus.SKIPPED:
        return TaskCancelledError(f"{result.name} was skipped, a previous task failed")
    return TaskCancelledError(f"{result.name} was cancelled")


def with_cleanup(task: Task, cleanup: Optional[CleanupFunc], resource_name: str) -> Task:
    if cleanup is not None:
        task.on_result(lambda result: cleanup(outcome_error(result), resource_name))
    return task


def new_delete_stack_task(
    driver: StackLifecycleDriver, description: str, stack: Stack, wait: bool
) -> Task:
    def _delete(context: TaskContext):
        driver.delete(stack, wait=wait)

    return GenericTask(description, _delete)


def new_tasks_to_delete_cluster_with_nodegroups(
    driver: StackLifecycleDriver,
    cluster_stack: Optional[Stack],
    nodegroup_stacks: list[NodeGroupStack],
    cluster_operable: bool,
    oidc: Optional[OIDCManager],
    binder: Optional[ServiceAccountBinder],
    wait: bool = False,
    force: bool = False,
    cleanup: CleanupFunc = None,
) -> TaskTree:
    """
    Builds the tree which tears down a cluster.

    :param cluster_stack: the cluster stack, ``None`` if it is already gone
    :param nodegroup_stacks: the nodegroup stacks to delete
    :param cluster_operable: whether the cluster API is reachable, service accounts are only unbound if it is
    :param oidc: the OIDC provider of the cluster, ``None`` if the cluster has none
    :param binder: removes the kubernetes service accounts
    :param wait: wait for the nodegroup and cluster stacks to be deleted
    :param force: do not let failed or timed out dependencies stop the teardown
    :param cleanup: called with the outcome of every deletion, with the name of the deleted resource
    """
    tree = TaskTree(best_effort=force)

    iam_tree = _new_tasks_to_delete_iam_with_oidc_provider(
        driver,
        oidc,
        binder if cluster_operable else None,
        force,
        include_addon_iam=True,
        cleanup=cleanup,
    )
    nodegroup_tree = new_tasks_to_delete_nodegroups(
        driver, nodegroup_stacks, wait=wait, cleanup=cleanup
    )

    if force:
        stage = TaskTree(parallel=True)
        for sub_tree in (iam_tree, nodegroup_tree):
            if len(sub_tree):
                stage.append(sub_tree)
        if len(stage):
            tree.append(stage)
    else:
        for sub_tree in (iam_tree, nodegroup_tree):
            if len(sub_tree):
                tree.append(sub_tree)

    if cluster_stack is not None:
        description = f'delete cluster control plane "{driver.registry.cluster_name}"'
        if not wait:
            description += " [async]"
        tree.append(
            with_cleanup(
                new_delete_stack_task(driver, description, cluster_stack, wait),
                cleanup,
                cluster_stack.name,
            )
        )
    return tree


def new_tasks_to_delete_nodegroups(
    driver: StackLifecycleDriver,
    stacks: list[NodeGroupStack],
    should_delete: Callable[[str], bool] = None,
    wait: bool = False,
    cleanup: CleanupFunc = None,
) -> TaskTree:
    """Builds a parallel tree deleting the nodegroup stacks for which ``should_delete`` returns true."""
    tree = TaskTree(parallel=True)
    for nodegroup in stacks:
        if should_delete is not None and not should_delete(nodegroup.nodegroup_name):
            continue
        kind = "managed nodegroup" if nodegroup.type == NodeGroupType.MANAGED else "nodegroup"
        description = f'delete {kind} "{nodegroup.nodegroup_name}"'
        if not wait:
            description += " [async]"
        tree.append(
            with_cleanup(
                new_delete_stack_task(driver, description, nodegroup.stack, wait),
                cleanup,
                nodegroup.name,
            )
        )
    return tree


def new_tasks_to_delete_iam_service_accounts(
    driver: StackLifecycleDriver,
    service_accounts: list[str],
    binder: Optional[ServiceAccountBinder],
    wait: bool = False,
    wait_condition: DeleteWaitCondition = None,
    force: bool = False,
    cleanup: CleanupFunc = None,
) -> TaskTree:
    """
    Builds a parallel tree with one sub-tree per service account (given as ``namespace/name``), deleting its IAM
    role stack and then the kubernetes service account. Service accounts without a stack are only unbound. With
    ``force`` the service account is removed even if its stack could not be deleted.

    Each stack deletion signals the wait condition, if any, with its outcome.
    """
    tree, delete_tasks = _new_iam_service_account_tree(
        driver,
        driver.registry.describe_iam_service_account_stacks(),
        service_accounts,
        binder,
        wait,
        force,
        cleanup,
    )
    if wait_condition is not None:
        for task in delete_tasks:
            task.on_result(wait_condition.signal)
    return tree


def _new_iam_service_account_tree(
    driver: StackLifecycleDriver,
    stacks: list[Stack],
    service_accounts: list[str],
    binder: Optional[ServiceAccountBinder],
    wait: bool,
    force: bool,
    cleanup: Optional[CleanupFunc],
) -> tuple[TaskTree, list[Task]]:
    """Returns the tree and its stack deletion leaves."""
    stacks_by_name: dict[str, list[Stack]] = {}
    for stack in stacks:
        stacks_by_name.setdefault(get_service_account_name(stack), []).append(stack)

    tree = TaskTree(parallel=True)
    delete_tasks = []
    for name in service_accounts:
        sub_tree = TaskTree(best_effort=force)
        role_stacks = stacks_by_name.get(name, [])
        if not role_stacks:
            LOG.info('serviceaccount "%s" has no IAM role stack', name)
        for stack in role_stacks:
            description = f'delete IAM role for serviceaccount "{name}"'
            if len(role_stacks) > 1:
                description += f" ({stack.name})"
            if not wait:
                description += " [async]"
            task = with_cleanup(
                new_delete_stack_task(driver, description, stack, wait), cleanup, stack.name
            )
            delete_tasks.append(task)
            sub_tree.append(task)

        if binder is not None:
            namespace, _, sa_name = name.partition("/")

            def _unbind(context: TaskContext, namespace=namespace, sa_name=sa_name):
                binder.unbind(namespace, sa_name)

            sub_tree.append(
                with_cleanup(GenericTask(f'delete serviceaccount "{name}"', _unbind), cleanup, name)
            )
        if len(sub_tree):
            tree.append(sub_tree)
    return tree, delete_tasks


def new_task_to_delete_addon_iam(
    driver: StackLifecycleDriver,
    wait: bool = False,
    wait_condition: DeleteWaitCondition = None,
    cleanup: CleanupFunc = None,
) -> TaskTree:
    tree = _new_addon_iam_tree(driver, driver.registry.get_iam_addons_stacks(), wait, cleanup)
    if wait_condition is not None:
        tree.on_result(wait_condition.signal)
    return tree


def _new_addon_iam_tree(
    driver: StackLifecycleDriver, stacks: list[Stack], wait: bool, cleanup: Optional[CleanupFunc]
) -> TaskTree:
    cluster_name = driver.registry.cluster_name
    tree = TaskTree(parallel=True)
    for stack in stacks:
        description = f'delete addon IAM "{get_iam_addon_name(stack, cluster_name) or stack.name}"'
        if not wait:
            description += " [async]"
        tree.append(
            with_cleanup(new_delete_stack_task(driver, description, stack, wait), cleanup, stack.name)
        )
    return tree


def oidc_provider_resource_name(cluster_name: str) -> str:
    """The name under which the deletion of the OIDC provider of a cluster is reported to the cleanup."""
    return f"{cluster_name}-oidc-provider"


def new_tasks_to_delete_oidc_provider_with_iam_service_accounts(
    driver: StackLifecycleDriver,
    oidc: Optional[OIDCManager],
    binder: Optional[ServiceAccountBinder],
    force: bool = False,
    cleanup: CleanupFunc = None,
) -> TaskTree:
    """
    Builds the tree which deletes all IAM service accounts of the cluster, and then its OIDC provider. With
    ``force`` the provider is deleted even if some service accounts could not be deleted in time.
    """
    return _new_tasks_to_delete_iam_with_oidc_provider(driver, oidc, binder, force, cleanup=cleanup)


def _new_tasks_to_delete_iam_with_oidc_provider(
    driver: StackLifecycleDriver,
    oidc: Optional[OIDCManager],
    binder: Optional[ServiceAccountBinder],
    force: bool,
    include_addon_iam: bool = False,
    cleanup: CleanupFunc = None,
) -> TaskTree:
    # every stack is queried once, the wait condition expects exactly the deletion leaves built from them
    service_account_stacks = driver.registry.describe_iam_service_account_stacks()
    service_accounts = list(
        dict.fromkeys(
            name for name in map(get_service_account_name, service_account_stacks) if name
        )
    )
    service_account_tree, signalling_tasks = _new_iam_service_account_tree(
        driver, service_account_stacks, service_accounts, binder, True, force, cleanup
    )

    iam_stage = TaskTree(parallel=True)
    if len(service_account_tree):
        iam_stage.append(service_account_tree)
    if include_addon_iam:
        addon_tree = _new_addon_iam_tree(
            driver, driver.registry.get_iam_addons_stacks(), True, cleanup
        )
        if len(addon_tree):
            iam_stage.append(addon_tree)
            signalling_tasks.extend(addon_tree.leaves())

    wait_condition = DeleteWaitCondition(
        len(signalling_tasks), name="IAM stacks of the OIDC provider"
    )
    for task in signalling_tasks:
        task.on_result(wait_condition.signal)

    tree = TaskTree(best_effort=force)
    if len(iam_stage):
        tree.append(iam_stage)

    if oidc is not None and oidc.provider_exists():

        def _delete_provider(context: TaskContext):
            wait_condition.wait_or_raise(force=force, cancel_event=context.cancel_event)
            oidc.delete_provider()

        tree.append(
            with_cleanup(
                GenericTask("delete IAM OIDC provider", _delete_provider),
                cleanup,
                oidc_provider_resource_name(driver.registry.cluster_name),
            )
        )
    return tree


def new_task_to_delete_unowned_nodegroup(
    driver: StackLifecycleDriver,
    cluster_name: str,
    nodegroup: str,
    wait_condition: DeleteWaitCondition = None,
    wait: bool = True,
) -> Task:
    """
    Builds the task which deletes a managed nodegroup which was not created through a stack. The task signals the
    wait condition, if any, with its outcome.
    """
    api = driver.registry.nodegroups

    def _delete(context: TaskContext):
        api.delete_nodegroup(cluster_name, nodegroup)
        if not wait:
            return

        def _deleted():
            return not api.nodegroup_exists(cluster_name, nodegroup), None

        try:
            poll_until(_deleted, driver.policy, driver.clock)
        except PollTimeout as e:
            raise StackTimeoutError(Stack(name=nodegroup), driver.policy.timeout, e.elapsed) from e

    task = GenericTask(f'delete unowned nodegroup "{nodegroup}"', _delete)
    if wait_condition is not None:
        task.on_result(wait_condition.signal)
    return task


def delete_tasks_for_deprecated_stacks(driver: StackLifecycleDriver) -> TaskTree:
    """Builds a sequential tree deleting the stacks created by legacy versions, in dependency order."""
    stacks = driver.registry.list_stacks_matching(deprecated_stacks_regex(driver.registry.cluster_name))

    def _suffix_index(stack: Stack) -> int:
        for index, suffix in enumerate(DEPRECATED_STACK_SUFFIXES):
            if stack.name.endswith(f"-{suffix}"):
                return index
        return len(DEPRECATED_STACK_SUFFIXES)

    tree = TaskTree()
    for stack in sorted(stacks, key=_suffix_index):
        tree.append(new_delete_stack_task(driver, f'delete deprecated stack "{stack.name}"', stack, True))
    return tree
