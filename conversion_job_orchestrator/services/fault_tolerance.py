"""
Fault tolerance for job execution.

Provides:
- Retry policy with exponential or linear backoff, capped
- Classification of errors that must never be retried
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict

from ..core.exceptions import ConfigurationError, PoolShutdownError, is_fatal
from ..models.job import Job

BACKOFF_STRATEGIES = ("exponential", "linear")


@dataclass
class RetryPolicy:
    """
    Configuration for retry behavior.

    The retry budget itself lives on each job (``max_retries``); the policy
    only decides how long to wait before the next attempt. There is no
    jitter, so delays are reproducible.
    """
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff: str = "exponential"
    exponential_base: float = 2.0

    def __post_init__(self):
        if self.backoff not in BACKOFF_STRATEGIES:
            raise ConfigurationError("retry.backoff", f"must be one of {', '.join(BACKOFF_STRATEGIES)}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry", "delays must not be negative")

    def get_delay(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (0 for the first retry).

        exponential: initial * base ** attempt
        linear:      initial * (attempt + 1)
        """
        attempt = max(0, attempt)
        if self.backoff == "linear":
            delay = self.initial_delay * (attempt + 1)
        else:
            delay = self.initial_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff": self.backoff,
            "exponential_base": self.exponential_base
        }


def is_retryable(error: BaseException) -> bool:
    """Fatal errors, shutdown and asyncio cancellation are never retried."""
    if isinstance(error, (PoolShutdownError, asyncio.CancelledError)):
        return False
    return not is_fatal(error)


def should_retry(job: Job, error: BaseException) -> bool:
    """Whether a failed attempt of ``job`` earns another one."""
    return is_retryable(error) and job.retry_count < job.max_retries
