"""
Narrow interfaces to the AWS APIs kubestack drives, and their boto3 implementations.

The adapters translate botocore errors into the kubestack error taxonomy: throttling and connection problems become
``TransientApiError``, missing stacks ``StackNotFoundError`` and conflicting operations ``StackInProgressError``.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from kubestack import config, constants
from kubestack.cfn.exceptions import (
    StackInProgressError,
    StackNotFoundError,
    TransientApiError,
)
from kubestack.cfn.models import (
    AuditEvent,
    Change,
    ChangeSet,
    ChangeSetStatus,
    Stack,
    StackEvent,
    StackResource,
    StackStatus,
)

LOG = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "InternalFailure",
    "RequestLimitExceeded",
    "RequestTimeout",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}

# max number of tags per CreateOrUpdateTags request
MAX_ASG_TAGS_PER_REQUEST = 25


class ProvisioningApi:
    """The stack operations of the provisioning API (CloudFormation)."""

    def create_stack(
        self,
        name: str,
        template_body: str,
        tags: dict[str, str],
        parameters: dict[str, str],
        capabilities: list[str],
    ) -> str:
        """Issues the creation of a stack and returns its id."""
        raise NotImplementedError

    def describe_stack(self, name_or_id: str) -> Stack:
        """Returns the current state of the stack, or raises ``StackNotFoundError``."""
        raise NotImplementedError

    def list_stacks(self, status_filters: Optional[list[StackStatus]] = None) -> list[Stack]:
        """Returns stack summaries (name, id, status) of all stacks matching the filters."""
        raise NotImplementedError

    def delete_stack(self, name_or_id: str) -> None:
        raise NotImplementedError

    def describe_stack_events(self, name_or_id: str) -> list[StackEvent]:
        """Returns the events of the stack, most recent first."""
        raise NotImplementedError

    def describe_stack_resources(self, name_or_id: str) -> list[StackResource]:
        raise NotImplementedError

    def get_template(self, name_or_id: str) -> str:
        raise NotImplementedError

    def create_change_set(
        self,
        stack_name: str,
        change_set_name: str,
        template_body: str,
        tags: dict[str, str],
        parameters: dict[str, str],
        capabilities: list[str],
        description: str = "",
    ) -> str:
        raise NotImplementedError

    def describe_change_set(self, stack_name: str, change_set_name: str) -> ChangeSet:
        raise NotImplementedError

    def execute_change_set(self, stack_name: str, change_set_name: str) -> None:
        raise NotImplementedError

    def delete_change_set(self, stack_name: str, change_set_name: str) -> None:
        raise NotImplementedError


class AutoScalingApi:
    def describe_auto_scaling_group(self, name: str) -> Optional[dict]:
        """Returns the auto scaling group, or ``None`` if it does not exist."""
        raise NotImplementedError

    def create_or_update_tags(self, name: str, tags: dict[str, str]) -> None:
        raise NotImplementedError


class AuditApi:
    def lookup_events(self, stack_id: str) -> list[AuditEvent]:
        raise NotImplementedError


class NodeGroupApi:
    """Deletion of nodegroups which are not owned by a stack (created outside of kubestack)."""

    def delete_nodegroup(self, cluster_name: str, nodegroup_name: str) -> None:
        raise NotImplementedError

    def nodegroup_exists(self, cluster_name: str, nodegroup_name: str) -> bool:
        raise NotImplementedError

    def describe_nodegroup_asg_names(self, cluster_name: str, nodegroup_name: str) -> list[str]:
        """Returns the names of the auto scaling groups EKS created for a managed nodegroup."""
        raise NotImplementedError


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def translate_client_error(error: ClientError, stack_name: Optional[str] = None) -> Exception:
    code = _error_code(error)
    message = error.response.get("Error", {}).get("Message", "") or str(error)
    if code in TRANSIENT_ERROR_CODES:
        return TransientApiError(message, code=code, stack_name=stack_name)
    if "does not exist" in message:
        return StackNotFoundError(stack_name or "", message)
    if "_IN_PROGRESS state" in message or code == "AlreadyExistsException":
        return StackInProgressError(stack_name or "", message)
    return error


@contextmanager
def translated_errors(stack_name: Optional[str] = None):
    try:
        yield
    except ClientError as e:
        translated = translate_client_error(e, stack_name)
        if translated is e:
            raise
        raise translated from e
    except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as e:
        raise TransientApiError(str(e), stack_name=stack_name) from e


def to_stack(data: dict) -> Stack:
    return Stack(
        name=data["StackName"],
        stack_id=data.get("StackId"),
        status=StackStatus(data["StackStatus"]),
        status_reason=data.get("StackStatusReason"),
        tags={tag["Key"]: tag["Value"] for tag in data.get("Tags") or []},
        parameters={
            param["ParameterKey"]: param.get("ParameterValue")
            for param in data.get("Parameters") or []
        },
        outputs={
            output["OutputKey"]: output.get("OutputValue") for output in data.get("Outputs") or []
        },
        capabilities=list(data.get("Capabilities") or []),
        creation_time=data.get("CreationTime"),
    )


def to_stack_event(data: dict) -> StackEvent:
    return StackEvent(
        timestamp=data["Timestamp"],
        logical_id=data.get("LogicalResourceId", ""),
        resource_type=data.get("ResourceType", ""),
        status=data.get("ResourceStatus", ""),
        status_reason=data.get("ResourceStatusReason"),
        physical_id=data.get("PhysicalResourceId"),
    )


def _tag_list(tags: dict[str, str]) -> list[dict]:
    return [{"Key": key, "Value": value} for key, value in (tags or {}).items()]


def _parameter_list(parameters: dict[str, str]) -> list[dict]:
    return [
        {"ParameterKey": key, "ParameterValue": value} for key, value in (parameters or {}).items()
    ]


class Boto3ProvisioningApi(ProvisioningApi):
    def __init__(self, client):
        self.client = client

    def create_stack(self, name, template_body, tags, parameters, capabilities) -> str:
        kwargs: dict[str, Any] = {
            "StackName": name,
            "TemplateBody": template_body,
            "Tags": _tag_list(tags),
            "Parameters": _parameter_list(parameters),
            "DisableRollback": False,
        }
        if capabilities:
            kwargs["Capabilities"] = capabilities
        with translated_errors(name):
            response = self.client.create_stack(**kwargs)
        return response["StackId"]

    def describe_stack(self, name_or_id: str) -> Stack:
        with translated_errors(name_or_id):
            response = self.client.describe_stacks(StackName=name_or_id)
        stacks = response.get("Stacks") or []
        if not stacks:
            raise StackNotFoundError(name_or_id)
        return to_stack(stacks[0])

    def list_stacks(self, status_filters: Optional[list[StackStatus]] = None) -> list[Stack]:
        kwargs = {}
        if status_filters:
            kwargs["StackStatusFilter"] = [str(status) for status in status_filters]
        stacks = []
        with translated_errors():
            for page in self.client.get_paginator("list_stacks").paginate(**kwargs):
                for summary in page.get("StackSummaries", []):
                    stacks.append(to_stack(summary))
        return stacks

    def delete_stack(self, name_or_id: str) -> None:
        with translated_errors(name_or_id):
            self.client.delete_stack(StackName=name_or_id)

    def describe_stack_events(self, name_or_id: str) -> list[StackEvent]:
        events = []
        with translated_errors(name_or_id):
            paginator = self.client.get_paginator("describe_stack_events")
            for page in paginator.paginate(StackName=name_or_id):
                events.extend(to_stack_event(event) for event in page.get("StackEvents", []))
        return events

    def describe_stack_resources(self, name_or_id: str) -> list[StackResource]:
        with translated_errors(name_or_id):
            response = self.client.describe_stack_resources(StackName=name_or_id)
        return [
            StackResource(
                logical_id=resource["LogicalResourceId"],
                resource_type=resource["ResourceType"],
                physical_id=resource.get("PhysicalResourceId"),
                status=resource.get("ResourceStatus"),
            )
            for resource in response.get("StackResources", [])
        ]

    def get_template(self, name_or_id: str) -> str:
        with translated_errors(name_or_id):
            response = self.client.get_template(StackName=name_or_id, TemplateStage="Original")
        body = response.get("TemplateBody")
        if isinstance(body, dict):
            # boto3 parses JSON template bodies
            return json.dumps(body)
        return body or ""

    def create_change_set(
        self,
        stack_name,
        change_set_name,
        template_body,
        tags,
        parameters,
        capabilities,
        description="",
    ) -> str:
        kwargs: dict[str, Any] = {
            "StackName": stack_name,
            "ChangeSetName": change_set_name,
            "ChangeSetType": "UPDATE",
            "TemplateBody": template_body,
            "Tags": _tag_list(tags),
            "Parameters": _parameter_list(parameters),
        }
        if description:
            kwargs["Description"] = description
        if capabilities:
            kwargs["Capabilities"] = capabilities
        with translated_errors(stack_name):
            response = self.client.create_change_set(**kwargs)
        return response["Id"]

    def describe_change_set(self, stack_name: str, change_set_name: str) -> ChangeSet:
        with translated_errors(stack_name):
            response = self.client.describe_change_set(
                StackName=stack_name, ChangeSetName=change_set_name
            )
        changes = []
        for change in response.get("Changes") or []:
            resource_change = change.get("ResourceChange") or {}
            changes.append(
                Change(
                    action=resource_change.get("Action", ""),
                    logical_id=resource_change.get("LogicalResourceId", ""),
                    resource_type=resource_change.get("ResourceType"),
                    replacement=resource_change.get("Replacement"),
                )
            )
        status = response.get("Status")
        return ChangeSet(
            name=response.get("ChangeSetName", change_set_name),
            stack_name=response.get("StackName", stack_name),
            change_set_id=response.get("ChangeSetId"),
            status=ChangeSetStatus(status) if status else None,
            status_reason=response.get("StatusReason"),
            execution_status=response.get("ExecutionStatus"),
            changes=changes,
        )

    def execute_change_set(self, stack_name: str, change_set_name: str) -> None:
        with translated_errors(stack_name):
            self.client.execute_change_set(StackName=stack_name, ChangeSetName=change_set_name)

    def delete_change_set(self, stack_name: str, change_set_name: str) -> None:
        with translated_errors(stack_name):
            self.client.delete_change_set(StackName=stack_name, ChangeSetName=change_set_name)


class Boto3AutoScalingApi(AutoScalingApi):
    def __init__(self, client):
        self.client = client

    def describe_auto_scaling_group(self, name: str) -> Optional[dict]:
        with translated_errors():
            response = self.client.describe_auto_scaling_groups(AutoScalingGroupNames=[name])
        groups = response.get("AutoScalingGroups") or []
        return groups[0] if groups else None

    def create_or_update_tags(self, name: str, tags: dict[str, str]) -> None:
        asg_tags = [
            {
                "ResourceId": name,
                "ResourceType": "auto-scaling-group",
                "Key": key,
                "Value": value,
                "PropagateAtLaunch": False,
            }
            for key, value in tags.items()
        ]
        for i in range(0, len(asg_tags), MAX_ASG_TAGS_PER_REQUEST):
            with translated_errors():
                self.client.create_or_update_tags(Tags=asg_tags[i : i + MAX_ASG_TAGS_PER_REQUEST])


class Boto3AuditApi(AuditApi):
    def __init__(self, client):
        self.client = client

    def lookup_events(self, stack_id: str) -> list[AuditEvent]:
        with translated_errors():
            response = self.client.lookup_events(
                LookupAttributes=[{"AttributeKey": "ResourceName", "AttributeValue": stack_id}]
            )
        return [
            AuditEvent(
                timestamp=event["EventTime"],
                event_name=event.get("EventName", ""),
                username=event.get("Username"),
                event_id=event.get("EventId"),
            )
            for event in response.get("Events", [])
        ]


class Boto3NodeGroupApi(NodeGroupApi):
    def __init__(self, client):
        self.client = client

    def delete_nodegroup(self, cluster_name: str, nodegroup_name: str) -> None:
        with translated_errors(nodegroup_name):
            try:
                self.client.delete_nodegroup(clusterName=cluster_name, nodegroupName=nodegroup_name)
            except ClientError as e:
                if _error_code(e) != "ResourceNotFoundException":
                    raise
                LOG.debug(
                    "nodegroup %s of cluster %s is already deleted", nodegroup_name, cluster_name
                )

    def nodegroup_exists(self, cluster_name: str, nodegroup_name: str) -> bool:
        with translated_errors(nodegroup_name):
            try:
                self.client.describe_nodegroup(
                    clusterName=cluster_name, nodegroupName=nodegroup_name
                )
            except ClientError as e:
                if _error_code(e) != "ResourceNotFoundException":
                    raise
                return False
        return True

    def describe_nodegroup_asg_names(self, cluster_name: str, nodegroup_name: str) -> list[str]:
        with translated_errors(nodegroup_name):
            response = self.client.describe_nodegroup(
                clusterName=cluster_name, nodegroupName=nodegroup_name
            )
        resources = response.get("nodegroup", {}).get("resources") or {}
        return [group["name"] for group in resources.get("autoScalingGroups") or []]


def connect_to(
    service: str,
    region_name: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    session: Optional[boto3.session.Session] = None,
):
    """Creates a boto3 client for the given service, honoring the region and endpoint configuration."""
    session = session or boto3.session.Session()
    return session.client(
        service,
        region_name=region_name or config.REGION,
        endpoint_url=endpoint_url or config.AWS_ENDPOINT_URL,
        config=BotoConfig(user_agent_extra=f"kubestack/{constants.VERSION}"),
    )


@dataclass
class AwsApis:
    provisioning: ProvisioningApi
    autoscaling: AutoScalingApi
    audit: AuditApi
    nodegroups: NodeGroupApi

    @classmethod
    def create(
        cls,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        session: Optional[boto3.session.Session] = None,
    ) -> "AwsApis":
        def _client(service: str):
            return connect_to(service, region_name, endpoint_url, session)

        return cls(
            provisioning=Boto3ProvisioningApi(_client("cloudformation")),
            autoscaling=Boto3AutoScalingApi(_client("autoscaling")),
            audit=Boto3AuditApi(_client("cloudtrail")),
            nodegroups=Boto3NodeGroupApi(_client("eks")),
        )
