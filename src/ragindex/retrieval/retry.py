"""
Retry policy with exponential backoff and jitter.

Keeps scheduling concerns out of the embedding client: the client raises
TransientNetworkError for anything worth retrying and wraps its request in
BackoffPolicy.call().
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from ragindex.exceptions import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    How often and how patiently to retry a transient failure.

    Delay before retry n (1-based) is base_delay * 2**(n-1), capped at
    max_delay, plus a uniform random jitter in [0, jitter] seconds.

    Attributes:
        max_attempts: Attempts including the first one
        base_delay: Delay in seconds before the first retry
        max_delay: Cap on the exponential part of the delay
        jitter: Upper bound of the random extra delay
        retry_on: Exception types that trigger a retry
        should_retry: Predicate used instead of retry_on when set
        sleep: Sleep function override (tests pass a recorder)
    """

    max_attempts: int = 3
    base_delay: float = 15.0
    max_delay: float = 120.0
    jitter: float = 5.0
    retry_on: tuple[type[BaseException], ...] = (TransientNetworkError,)
    should_retry: Optional[Callable[[BaseException], bool]] = None
    sleep: Optional[Callable[[float], None]] = None

    def retrying(self) -> Retrying:
        """Build a tenacity controller for this policy."""
        kwargs = {}
        if self.should_retry is not None:
            retry = retry_if_exception(self.should_retry)
        else:
            retry = retry_if_exception_type(self.retry_on)
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay)
            + wait_random(0, self.jitter),
            retry=retry,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            **kwargs,
        )

    def call(self, operation: Callable[[], T]) -> T:
        """
        Run operation, retrying per policy.

        Returns:
            The operation's result

        Raises:
            The last exception once attempts are exhausted, or any
            non-retryable exception immediately
        """
        return self.retrying()(operation)


NO_RETRY = BackoffPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0)
