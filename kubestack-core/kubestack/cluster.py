"""
Input data of the orchestration, and the collaborators which are opaque to it.

Templates are synthesized outside of kubestack, every spec carries its already built resource set.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from kubestack.cfn.models import ResourceSet


@dataclass
class ClusterConfig:
    name: str
    region: Optional[str] = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeGroupSpec:
    name: str
    resource_set: Optional[ResourceSet] = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class ManagedNodeGroupSpec(NodeGroupSpec):
    # copy the nodegroup tags to the auto scaling group created by EKS
    propagate_asg_tags: bool = False


@dataclass
class ServiceAccountSpec:
    name: str
    namespace: str = "default"
    resource_set: Optional[ResourceSet] = None
    tags: dict[str, str] = field(default_factory=dict)
    # only create the IAM role, do not create/annotate the kubernetes service account
    role_only: bool = False

    @property
    def name_string(self) -> str:
        return f"{self.namespace}/{self.name}"


class OIDCManager(Protocol):
    """Manages the OIDC identity provider of a cluster."""

    def provider_exists(self) -> bool: ...

    def delete_provider(self) -> None:
        """Deletes the provider, a no-op if it does not exist."""
        ...


class ServiceAccountBinder(Protocol):
    """Binds IAM roles to kubernetes service accounts through the cluster API."""

    def bind(self, service_account: ServiceAccountSpec, role_arn: Optional[str]) -> None: ...

    def unbind(self, namespace: str, name: str) -> None:
        """Deletes the service account, a no-op if it does not exist."""
        ...
