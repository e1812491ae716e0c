"""Names of the stacks and change sets owned by a cluster."""

import re
from datetime import datetime, timezone

from kubestack import constants


def make_stack_name_prefix(cluster_name: str) -> str:
    return f"{constants.STACK_NAME_PREFIX}-{cluster_name}-"


def make_cluster_stack_name(cluster_name: str) -> str:
    return f"{make_stack_name_prefix(cluster_name)}{constants.CLUSTER_STACK_SUFFIX}"


def make_nodegroup_stack_name(cluster_name: str, nodegroup_name: str) -> str:
    return f"{make_stack_name_prefix(cluster_name)}{constants.NODEGROUP_STACK_INFIX}-{nodegroup_name}"


def make_iam_service_account_stack_name(cluster_name: str, namespace: str, name: str) -> str:
    infix = constants.IAM_SERVICE_ACCOUNT_STACK_INFIX
    return f"{make_stack_name_prefix(cluster_name)}{infix}-{namespace}-{name}"


def make_addon_stack_name(cluster_name: str, addon_name: str) -> str:
    return f"{make_stack_name_prefix(cluster_name)}{constants.ADDON_STACK_INFIX}-{addon_name}"


def make_fargate_stack_name(cluster_name: str) -> str:
    return f"{make_stack_name_prefix(cluster_name)}{constants.FARGATE_STACK_SUFFIX}"


def make_karpenter_stack_name(cluster_name: str) -> str:
    return f"{make_stack_name_prefix(cluster_name)}{constants.KARPENTER_STACK_SUFFIX}"


def make_change_set_name(action: str, now: datetime = None) -> str:
    now = now or datetime.now(tz=timezone.utc)
    return f"{constants.CHANGE_SET_NAME_PREFIX}-{action}-{int(now.timestamp())}"


def cluster_stacks_regex(cluster_name: str) -> str:
    """Matches the names of all stacks owned by the cluster."""
    return "^" + re.escape(make_stack_name_prefix(cluster_name))


def nodegroup_stacks_regex(cluster_name: str) -> str:
    return cluster_stacks_regex(cluster_name) + re.escape(f"{constants.NODEGROUP_STACK_INFIX}-")


def iam_service_account_stacks_regex(cluster_name: str) -> str:
    return cluster_stacks_regex(cluster_name) + re.escape(
        f"{constants.IAM_SERVICE_ACCOUNT_STACK_INFIX}-"
    )


def addon_stacks_regex(cluster_name: str) -> str:
    return cluster_stacks_regex(cluster_name) + re.escape(f"{constants.ADDON_STACK_INFIX}-")


def deprecated_stacks_regex(cluster_name: str) -> str:
    """Matches the stacks created by legacy versions, e.g. ``EKS-mycluster-ControlPlane``."""
    suffixes = "|".join(constants.DEPRECATED_STACK_SUFFIXES)
    return f"^(?:(?:EKS-)?{re.escape(cluster_name)}-(?:{suffixes}))$"
