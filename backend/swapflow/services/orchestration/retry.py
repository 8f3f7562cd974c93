"""
Retry executor for single asynchronous provider operations.

Retries only typed transient failures (NetworkError) with linear backoff
base_delay * attempt_number: 2s, 4s, 6s with the default base.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from swapflow.config import Settings
from swapflow.models.schemas import RetryState
from swapflow.services.failures import OrchestrationError, coerce_error, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


class RetryExecutor:
    """
    Wraps one async operation with bounded retry on transient failure.

    Example:
        executor = RetryExecutor(max_retries=3, base_delay=2.0)
        handle = await executor.run(
            lambda: provider.submit("upscale_clarity", payload),
            "fal upscale submission",
        )
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize retry executor.

        Args:
            max_retries: Total attempts (first call included)
            base_delay: Backoff unit in seconds
            sleep: Awaitable sleep (injectable for tests)
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, sleep: SleepFunc = asyncio.sleep) -> "RetryExecutor":
        """Create executor with configured defaults."""
        return cls(
            max_retries=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            sleep=sleep,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        max_retries: int | None = None,
        provider: str | None = None,
    ) -> T:
        """
        Execute operation, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory
            name: Operation name for logs and diagnostics
            max_retries: Override for total attempts
            provider: Provider identifier attached to coerced errors

        Returns:
            Operation result

        Raises:
            OrchestrationError: Last error, annotated with operation name
                and attempt count
        """
        state = RetryState(operation=name, max_attempts=max_retries or self.max_retries)

        async def attempt() -> T:
            state.attempt += 1
            try:
                result = await operation()
            except Exception as e:
                error = coerce_error(e, provider)
                state.last_error = error
                logger.warning(
                    f"{name} attempt {state.attempt}/{state.max_attempts} failed: "
                    f"{error.failure_class.value}: {error.message}"
                )
                if error is e:
                    raise
                raise error from e

            logger.info(f"{name} succeeded on attempt {state.attempt}/{state.max_attempts}")
            return result

        def before_sleep(retry_state: RetryCallState) -> None:
            state.delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.info(
                f"{name}: waiting {state.delay:.1f}s before attempt "
                f"{retry_state.attempt_number + 1}/{state.max_attempts}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(state.max_attempts),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            sleep=self.sleep,
            reraise=True,
        )

        try:
            return await retrying(attempt)
        except OrchestrationError as e:
            e.annotate(name, state.attempt)
            logger.error(f"{name} failed after {state.attempt} attempt(s): {e.message}")
            raise
