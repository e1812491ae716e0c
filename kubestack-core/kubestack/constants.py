import os

from kubestack.version import __version__

# version of the kubestack package
VERSION = __version__

# default region for boto3 clients, if nothing else is configured
DEFAULT_REGION = "us-west-2"

# truthy/falsy values for environment based configuration
TRUE_STRINGS = ("1", "true", "True")
FALSE_STRINGS = ("0", "false", "False")

# log levels which can be set via KS_LOG
LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "warning")
KS_LOG_TRACE = "trace"
TRACE_LOG_LEVELS = [KS_LOG_TRACE]

# prefix for every stack owned by a cluster, e.g. "kubestack-mycluster-cluster"
STACK_NAME_PREFIX = os.environ.get("KS_STACK_NAME_PREFIX", "").strip() or "kubestack"

# suffixes / infixes of the stack names, one per stack role
CLUSTER_STACK_SUFFIX = "cluster"
NODEGROUP_STACK_INFIX = "nodegroup"
IAM_SERVICE_ACCOUNT_STACK_INFIX = "addon-iamserviceaccount"
ADDON_STACK_INFIX = "addon"
FARGATE_STACK_SUFFIX = "fargate"
KARPENTER_STACK_SUFFIX = "karpenter"

# prefix of change sets created by the lifecycle driver
CHANGE_SET_NAME_PREFIX = "kubestack"

# stack tag keys
TAG_PREFIX = "kubestack.io"
TAG_CLUSTER_NAME = f"{TAG_PREFIX}/cluster-name"
TAG_OLD_CLUSTER_NAME = "kubestack.cluster.k8s.io/v1alpha1/cluster-name"
TAG_NODEGROUP_NAME = f"{TAG_PREFIX}/nodegroup-name"
TAG_NODEGROUP_TYPE = f"{TAG_PREFIX}/nodegroup-type"
TAG_IAM_SERVICE_ACCOUNT_NAME = f"{TAG_PREFIX}/iamserviceaccount-name"
TAG_ADDON_NAME = f"{TAG_PREFIX}/addon-name"
TAG_CREATED_BY = f"{TAG_PREFIX}/created-by"

# CloudFormation capabilities, requested when the template contains IAM resources
CAPABILITY_IAM = "CAPABILITY_IAM"
CAPABILITY_NAMED_IAM = "CAPABILITY_NAMED_IAM"

# name suffixes of stacks created by legacy versions, which are removed on cluster deletion
DEPRECATED_STACK_SUFFIXES = ("DefaultNodeGroup", "ControlPlane", "ServiceRole", "VPC")

# number of most recent stack events attached to a failure for diagnostics
MAX_DIAGNOSTIC_EVENTS = 10

# output of an IAM service account stack holding the ARN of the role
IAM_SERVICE_ACCOUNT_ROLE_OUTPUT = "Role1"

# value of the created-by tag on every stack
CREATED_BY = "kubestack"
