"""Exponential backoff with jitter around fallible operations."""

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..exceptions import OperationCancelledError, RetryExhaustedError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, float, BaseException], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters, recomputed for every attempt."""
    initial_delay: float = 0.1
    max_delay: float = 60.0
    max_attempts: int = 5
    backoff_factor: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def compute_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after the given 0-indexed attempt failed.

        Args:
            attempt: Index of the attempt that just failed
            rng: Random source for the jitter (module random by default)

        Returns:
            Delay in seconds, clamped to ``[0, max_delay]``
        """
        uniform = (rng or random).uniform(-self.jitter, self.jitter)
        delay = self.initial_delay * (self.backoff_factor ** attempt) * (1 + uniform)
        return min(max(delay, 0.0), self.max_delay)


class RetryController:
    """Run an operation until it succeeds, fails fatally or runs out of attempts."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        on_retry: Optional[RetryHook] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize retry controller.

        Args:
            policy: Backoff parameters
            cancel_event: Event that aborts the controller when set
            on_retry: Called with (attempt, delay, error) before each backoff wait
            rng: Random source for the jitter
        """
        self.policy = policy or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.on_retry = on_retry
        self.rng = rng
        self.attempts = 0

    def run(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` under the retry policy.

        Args:
            operation: Zero-argument callable to attempt

        Returns:
            Whatever ``operation`` returns on its first successful attempt

        Raises:
            OperationCancelledError: If the cancel event was set before an
                attempt or during a backoff wait
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: The original error, unchanged, if it is not retryable
        """
        last_error: Optional[BaseException] = None
        self.attempts = 0

        for attempt in range(self.policy.max_attempts):
            if self.cancel_event.is_set():
                raise OperationCancelledError(
                    f"operation cancelled: {last_error}" if last_error else "operation cancelled"
                )

            self.attempts += 1
            try:
                return operation()
            except Exception as e:
                if not is_retryable(e):
                    logger.debug(f"Attempt {attempt + 1} failed with non-retryable error: {e}")
                    raise
                last_error = e

            if attempt == self.policy.max_attempts - 1:
                break

            delay = self.policy.compute_delay(attempt, self.rng)
            logger.warning(
                f"Attempt {attempt + 1}/{self.policy.max_attempts} failed: {last_error} "
                f"- retrying in {delay:.2f}s"
            )
            if self.on_retry:
                self.on_retry(attempt, delay, last_error)

            # Event.wait returns True as soon as the event is set
            if self.cancel_event.wait(delay):
                raise OperationCancelledError(
                    f"operation cancelled during backoff: {last_error}"
                ) from last_error

        raise RetryExhaustedError(self.attempts, last_error) from last_error


def retry_with_backoff(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
    on_retry: Optional[RetryHook] = None,
) -> T:
    """Convenience wrapper around :class:`RetryController`."""
    return RetryController(policy, cancel_event, on_retry).run(operation)
