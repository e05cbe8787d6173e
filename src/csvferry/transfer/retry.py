"""
Retry policy and retry-with-counter combinator for transfer invocations.

Unlike a plain retry decorator, :meth:`RetryManager.execute` never raises for
a failed operation: it returns a :class:`RetryState` carrying the attempt
count and the last error, so callers can aggregate outcomes.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Type

from csvferry.utils.logging import get_logger

logger = get_logger("csvferry.transfer.retry")


@dataclass
class RetryPolicy:
    """
    Configuration for retrying a failed invocation.

    ``max_attempts`` counts every execution, the first one included.
    With ``exponential_base=1.0`` the delay is fixed; above 1.0 it grows per
    retry and is capped at ``max_delay``.

    Examples:
        >>> # Three attempts, one second apart
        >>> policy = RetryPolicy(max_attempts=3, initial_delay=1.0)

        >>> # Capped exponential backoff: 2s, 4s, 8s ... up to 60s
        >>> policy = RetryPolicy(max_attempts=5, initial_delay=2.0, exponential_base=2.0, max_delay=60.0)

        >>> # Immediate retries
        >>> policy = RetryPolicy(initial_delay=0.0)
    """

    max_attempts: int = 3

    # Delay before the first retry (seconds); 0 retries immediately
    initial_delay: float = 1.0

    max_delay: float = 30.0

    exponential_base: float = 1.0

    # Random jitter of ±25% of the delay
    jitter: bool = False

    # Only retry these exception types (None = retry all exceptions)
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be >= 1.0")

    def should_retry(self, exception: Exception, attempts_made: int) -> bool:
        """
        Determine if another attempt is allowed after this exception.

        Args:
            exception: The exception that occurred
            attempts_made: Attempts executed so far (1 after the first failure)
        """
        if attempts_made >= self.max_attempts:
            return False
        if self.retryable_exceptions is not None:
            return isinstance(exception, self.retryable_exceptions)
        return True

    def get_delay(self, retry_number: int) -> float:
        """
        Delay before retry ``retry_number`` (0-indexed).

        delay = min(initial_delay * base^retry_number, max_delay), with
        optional jitter applied before the cap.
        """
        delay = self.initial_delay * (self.exponential_base**retry_number)
        if self.jitter:
            delay *= random.uniform(0.75, 1.25)
        return min(delay, self.max_delay)


@dataclass
class RetryState:
    """
    State tracking for retry execution.

    Stores retry history for the outcome record and debugging.
    """

    label: str

    total_attempts: int = 0

    # Exceptions encountered, oldest first
    exceptions: list = field(default_factory=list)

    delays: list = field(default_factory=list)

    result: Any = None

    final_exception: Optional[Exception] = None

    succeeded: bool = False

    def record_attempt(self, exception: Optional[Exception] = None):
        """Record an attempt and its result."""
        self.total_attempts += 1
        if exception is not None:
            self.exceptions.append(
                {
                    "attempt": self.total_attempts,
                    "exception_type": type(exception).__name__,
                    "exception_message": str(exception),
                    "timestamp": time.time(),
                }
            )

    def record_delay(self, delay: float):
        self.delays.append(delay)

    def mark_success(self, result: Any):
        self.succeeded = True
        self.result = result

    def mark_failure(self, exception: Exception):
        self.succeeded = False
        self.final_exception = exception

    @property
    def last_error(self) -> Optional[str]:
        if self.final_exception is None:
            return None
        return str(self.final_exception) or type(self.final_exception).__name__


class RetryManager:
    """
    Runs an async operation under a RetryPolicy.

    Examples:
        >>> manager = RetryManager()
        >>> state = await manager.execute(run_invocation, invocation, policy=RetryPolicy(max_attempts=3))
        >>> state.succeeded, state.total_attempts
        (True, 1)
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._sleep = sleep

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        policy: Optional[RetryPolicy] = None,
        label: Optional[str] = None,
        **kwargs,
    ) -> RetryState:
        """
        Execute ``func`` until it succeeds or the policy gives up.

        Cancellation is never retried and propagates to the caller.

        Returns:
            RetryState with ``succeeded``, ``total_attempts`` and ``final_exception``
        """
        policy = policy or RetryPolicy()
        state = RetryState(label=label or getattr(func, "__name__", "operation"))

        while True:
            logger.debug(f"Executing {state.label} (attempt {state.total_attempts + 1}/{policy.max_attempts})")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                state.record_attempt(exception=e)

                if not policy.should_retry(e, state.total_attempts):
                    state.mark_failure(e)
                    logger.error(f"{state.label} failed after {state.total_attempts} attempt(s): {e}")
                    return state

                delay = policy.get_delay(state.total_attempts - 1)
                state.record_delay(delay)
                logger.warning(
                    f"{state.label} attempt {state.total_attempts} failed: {e}. Retrying in {delay:.2f}s..."
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            state.record_attempt()
            state.mark_success(result)
            if state.total_attempts > 1:
                logger.info(f"{state.label} succeeded after {state.total_attempts} attempts")
            return state
