import json

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from kubestack.cfn.api import AwsApis, translate_client_error, translated_errors
from kubestack.cfn.exceptions import StackInProgressError, StackNotFoundError, TransientApiError
from kubestack.cfn.models import StackStatus

TEMPLATE = {
    "Resources": {"Queue": {"Type": "AWS::SQS::Queue", "Properties": {"QueueName": "ks-queue"}}}
}


def client_error(code: str, message: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "DescribeStacks")


class TestTranslateClientError:
    def test_throttling_is_transient(self):
        error = translate_client_error(client_error("Throttling", "Rate exceeded"), "s1")

        assert isinstance(error, TransientApiError)
        assert error.code == "Throttling"

    def test_missing_stack(self):
        error = translate_client_error(
            client_error("ValidationError", "Stack with id s1 does not exist"), "s1"
        )

        assert isinstance(error, StackNotFoundError)

    def test_operation_in_progress(self):
        error = translate_client_error(
            client_error(
                "ValidationError",
                "Stack:s1 is in DELETE_IN_PROGRESS state and can not be updated.",
            ),
            "s1",
        )

        assert isinstance(error, StackInProgressError)

    def test_other_errors_are_returned_unchanged(self):
        original = client_error("AccessDenied", "not allowed")

        assert translate_client_error(original) is original

    def test_connection_errors_are_transient(self):
        with pytest.raises(TransientApiError):
            with translated_errors("s1"):
                raise EndpointConnectionError(endpoint_url="http://localhost:4566")


@pytest.fixture
def aws_apis():
    with mock_aws():
        yield AwsApis.create(region_name="us-east-1", session=boto3.session.Session())


class TestBoto3ProvisioningApi:
    def test_stack_lifecycle(self, aws_apis):
        api = aws_apis.provisioning

        stack_id = api.create_stack(
            "kubestack-test-cluster",
            json.dumps(TEMPLATE),
            tags={"kubestack.io/cluster-name": "test"},
            parameters={},
            capabilities=[],
        )

        stack = api.describe_stack("kubestack-test-cluster")
        assert stack.stack_id == stack_id
        assert stack.status == StackStatus.CREATE_COMPLETE
        assert stack.tags == {"kubestack.io/cluster-name": "test"}
        assert json.loads(api.get_template("kubestack-test-cluster")) == TEMPLATE
        assert "kubestack-test-cluster" in [s.name for s in api.list_stacks()]
        assert [r.logical_id for r in api.describe_stack_resources("kubestack-test-cluster")] == [
            "Queue"
        ]
        assert api.describe_stack_events("kubestack-test-cluster")

        api.delete_stack("kubestack-test-cluster")

        with pytest.raises(StackNotFoundError):
            api.describe_stack("kubestack-test-cluster")

    def test_describe_missing_stack(self, aws_apis):
        with pytest.raises(StackNotFoundError):
            aws_apis.provisioning.describe_stack("missing")


class TestBoto3AutoScalingApi:
    def test_missing_group(self, aws_apis):
        assert aws_apis.autoscaling.describe_auto_scaling_group("missing") is None
