import logging
import os
from typing import Optional, Union

from kubestack.constants import DEFAULT_REGION, FALSE_STRINGS, LOG_LEVELS, TRUE_STRINGS

LOG = logging.getLogger(__name__)


def eval_log_type(env_var_name: str) -> Union[str, bool]:
    """Get the log type from environment variable"""
    ks_log = os.environ.get(env_var_name, "").lower().strip()
    return ks_log if ks_log in LOG_LEVELS else False


def parse_boolean_env(env_var_name: str) -> Optional[bool]:
    """Parse the value of the given env variable and return True/False, or None if it is not a boolean value."""
    value = os.environ.get(env_var_name, "").lower().strip()
    if value in TRUE_STRINGS:
        return True
    if value in FALSE_STRINGS:
        return False
    return None


def is_env_true(env_var_name: str) -> bool:
    """Whether the given environment variable has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() in TRUE_STRINGS


def is_env_not_false(env_var_name: str) -> bool:
    """Whether the given environment variable is empty or has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() not in FALSE_STRINGS


def float_env(env_var_name: str, default: float) -> float:
    """Read a float from the environment, falling back to the default for empty or malformed values."""
    value = os.environ.get(env_var_name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        LOG.warning("Ignoring invalid value %r for %s, using %s", value, env_var_name, default)
        return default


def int_env(env_var_name: str, default: int) -> int:
    return int(float_env(env_var_name, default))


# whether debug mode is enabled
DEBUG = is_env_true("DEBUG")

# log level of kubestack, overrides DEBUG
KS_LOG = eval_log_type("KS_LOG")

# log full tracebacks of failed tasks
KS_VERBOSE_ERRORS = is_env_true("KS_VERBOSE_ERRORS")

# endpoint override for all AWS clients (e.g. a local AWS emulator)
AWS_ENDPOINT_URL = os.environ.get("AWS_ENDPOINT_URL", "").strip() or None

# region used to create AWS clients
REGION = (
    os.environ.get("KS_REGION", "").strip()
    or os.environ.get("AWS_DEFAULT_REGION", "").strip()
    or DEFAULT_REGION
)

# deadline (in seconds) for a stack to reach a terminal status
STACK_OPERATION_TIMEOUT = float_env("KS_STACK_OPERATION_TIMEOUT", 1800)

# polling schedule while waiting for a stack to leave a transitional status
POLL_INITIAL_INTERVAL = float_env("KS_POLL_INITIAL_INTERVAL", 5)
POLL_MAX_INTERVAL = float_env("KS_POLL_MAX_INTERVAL", 30)
POLL_MULTIPLIER = float_env("KS_POLL_MULTIPLIER", 1.5)

# how often throttled / unavailable API calls are retried before giving up
TRANSIENT_MAX_RETRIES = int_env("KS_TRANSIENT_MAX_RETRIES", 5)

# default cap on concurrently running tasks of a parallel tree (0 = unbounded)
TASK_CONCURRENCY_LIMIT = int_env("KS_TASK_CONCURRENCY_LIMIT", 0)

# default timeout (in seconds) for a deletion to wait for its dependencies
DEPENDENCY_WAIT_TIMEOUT = float_env("KS_DEPENDENCY_WAIT_TIMEOUT", 1200)


def is_trace_logging_enabled() -> bool:
    if KS_LOG:
        from kubestack.constants import TRACE_LOG_LEVELS

        return KS_LOG.lower() in TRACE_LOG_LEVELS
    return False


# list of config variables, used for printing the effective configuration
CONFIG_ENV_VARS = [
    "AWS_DEFAULT_REGION",
    "AWS_ENDPOINT_URL",
    "DEBUG",
    "KS_DEPENDENCY_WAIT_TIMEOUT",
    "KS_LOG",
    "KS_POLL_INITIAL_INTERVAL",
    "KS_POLL_MAX_INTERVAL",
    "KS_POLL_MULTIPLIER",
    "KS_REGION",
    "KS_STACK_NAME_PREFIX",
    "KS_STACK_OPERATION_TIMEOUT",
    "KS_TASK_CONCURRENCY_LIMIT",
    "KS_TRANSIENT_MAX_RETRIES",
    "KS_VERBOSE_ERRORS",
]


def collect_config_items() -> list[tuple[str, object]]:
    """Returns a list of key-value tuples of the effective kubestack configuration."""
    return [
        ("DEBUG", DEBUG),
        ("KS_LOG", KS_LOG),
        ("KS_VERBOSE_ERRORS", KS_VERBOSE_ERRORS),
        ("AWS_ENDPOINT_URL", AWS_ENDPOINT_URL),
        ("REGION", REGION),
        ("STACK_OPERATION_TIMEOUT", STACK_OPERATION_TIMEOUT),
        ("POLL_INITIAL_INTERVAL", POLL_INITIAL_INTERVAL),
        ("POLL_MAX_INTERVAL", POLL_MAX_INTERVAL),
        ("POLL_MULTIPLIER", POLL_MULTIPLIER),
        ("TRANSIENT_MAX_RETRIES", TRANSIENT_MAX_RETRIES),
        ("TASK_CONCURRENCY_LIMIT", TASK_CONCURRENCY_LIMIT),
        ("DEPENDENCY_WAIT_TIMEOUT", DEPENDENCY_WAIT_TIMEOUT),
    ]
