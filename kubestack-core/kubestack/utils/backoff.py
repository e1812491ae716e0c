import random

from pydantic import Field
from pydantic.dataclasses import dataclass

from kubestack import config


@dataclass
class ExponentialBackoff:
    """
    ExponentialBackoff implements exponential backoff with optional randomization.
    The backoff period increases exponentially for each retry attempt, capped at ``max_interval``.

    next_backoff() is calculated using the following formula:
        ```
        randomized_interval = random_between(retry_interval * (1 - randomization_factor), retry_interval * (1 + randomization_factor))
        ```

    Example sequence with initial_interval=5, multiplier=1.5, max_interval=30 and no randomization:

    | Request # | Interval (seconds) |
    |-----------|--------------------|
    | 1         | 5                  |
    | 2         | 7.5                |
    | 3         | 11.25              |
    | 4         | 16.875             |
    | 5         | 25.3125            |
    | 6         | 30                 |

    Note:
        - ``max_interval`` caps the base interval, not the randomized value
        - returns 0 once ``max_retries`` is exceeded, callers treat this as "give up"
        - deadlines are enforced by the caller (see ``kubestack.utils.sync.poll_until``), so a fake clock can be used
        - the implementation is not thread-safe, every waiter creates its own instance
    """

    initial_interval: float = Field(5.0, title="Initial backoff interval in seconds", gt=0)
    randomization_factor: float = Field(0.0, title="Factor to randomize backoff", ge=0, le=1)
    multiplier: float = Field(1.5, title="Multiply interval by this factor each retry", ge=1)
    max_interval: float = Field(30.0, title="Maximum backoff interval in seconds", gt=0)
    max_retries: int = Field(-1, title="Max retry attempts (-1 for unlimited)", ge=-1)

    def __post_init__(self):
        self.retry_interval: float = 0
        self.retries: int = 0

    def reset(self) -> None:
        self.retry_interval = 0
        self.retries = 0

    def next_backoff(self) -> float:
        if self.retry_interval == 0:
            self.retry_interval = min(self.initial_interval, self.max_interval)

        self.retries += 1

        if self.max_retries >= 0 and self.retries > self.max_retries:
            return 0

        next_interval = self.retry_interval
        if 0 < self.randomization_factor <= 1:
            min_interval = self.retry_interval * (1 - self.randomization_factor)
            max_interval = self.retry_interval * (1 + self.randomization_factor)
            next_interval = random.uniform(min_interval, max_interval)

        self.retry_interval = min(self.max_interval, self.retry_interval * self.multiplier)

        return next_interval


@dataclass
class PollingPolicy:
    """
    Parameters of a wait loop: the backoff schedule between two polls and the hard deadline (in seconds) after which
    waiting is given up. A ``timeout`` of ``None`` waits forever.
    """

    initial_interval: float = Field(5.0, gt=0)
    multiplier: float = Field(1.5, ge=1)
    max_interval: float = Field(30.0, gt=0)
    randomization_factor: float = Field(0.0, ge=0, le=1)
    timeout: float | None = Field(1800.0, gt=0)

    def backoff(self, max_retries: int = -1) -> ExponentialBackoff:
        return ExponentialBackoff(
            initial_interval=self.initial_interval,
            randomization_factor=self.randomization_factor,
            multiplier=self.multiplier,
            max_interval=self.max_interval,
            max_retries=max_retries,
        )

    def with_timeout(self, timeout: float | None) -> "PollingPolicy":
        return PollingPolicy(
            initial_interval=self.initial_interval,
            multiplier=self.multiplier,
            max_interval=self.max_interval,
            randomization_factor=self.randomization_factor,
            timeout=timeout,
        )

    @classmethod
    def from_config(cls) -> "PollingPolicy":
        return cls(
            initial_interval=config.POLL_INITIAL_INTERVAL,
            multiplier=config.POLL_MULTIPLIER,
            max_interval=config.POLL_MAX_INTERVAL,
            timeout=config.STACK_OPERATION_TIMEOUT,
        )
