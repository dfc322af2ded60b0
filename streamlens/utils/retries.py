"""
Retry with exponential backoff for async remote operations
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, TypeVar

T = TypeVar("T")


async def with_retries(
    operation_to_retry: Callable[[], Awaitable[T]],
    log: logging.Logger,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_delay: float = 10.0,
    context: str = "Operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Retry an async operation with exponential backoff on transient errors.

    :param operation_to_retry: Zero-argument callable returning an awaitable.
    :param log: Logger for attempt failures.
    :param max_attempts: Maximum number of attempts.
    :param delay: Delay before the second attempt, in seconds.
    :param backoff_multiplier: Factor applied to the delay after each failure.
    :param max_delay: Cap on any single delay, in seconds.
    :param context: Description of the operation used in log messages.
    :param sleep: Awaitable sleep function.
    :return: The operation result.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation_to_retry()
        except Exception as e:  # pylint: disable=broad-except
            if attempt == max_attempts:
                log.error(
                    "%s failed after %s attempts: %s", context, max_attempts, e
                )
                raise  # re-raise on final failure
            backoff = min(delay * backoff_multiplier ** (attempt - 1), max_delay)
            log.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                context,
                attempt,
                max_attempts,
                backoff,
                e,
            )
            await sleep(backoff)
    raise ValueError("max_attempts must be at least 1")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff schedule for one class of remote calls.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Delay after the first failure, in seconds.
        backoff_multiplier: Growth factor of successive delays.
        max_delay: Cap on a single delay, in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """
        Delay slept after the given failed attempt.

        :param attempt: The 1-based attempt that failed.
        :return: The delay in seconds.
        """
        return min(
            self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay
        )

    def delays(self) -> List[float]:
        """
        The full sleep schedule if every attempt fails.

        :return: One delay per retry; the final failure does not sleep.
        """
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts)]

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        log: logging.Logger,
        context: str = "Operation",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Run the operation under this policy.

        :param operation: Zero-argument callable returning an awaitable.
        :param log: Logger for attempt failures.
        :param context: Description of the operation used in log messages.
        :param sleep: Awaitable sleep function.
        :return: The operation result.
        """
        return await with_retries(
            operation,
            log,
            max_attempts=self.max_attempts,
            delay=self.base_delay,
            backoff_multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
            context=context,
            sleep=sleep,
        )


# Budgets used by the scan and poll paths.
LOG_FETCH_RETRY_POLICY = RetryPolicy(max_attempts=5)
EVENT_DETAIL_RETRY_POLICY = RetryPolicy(max_attempts=3)
WEBHOOK_RETRY_POLICY = RetryPolicy(max_attempts=3)
