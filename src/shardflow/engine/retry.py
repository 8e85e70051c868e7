# src/shardflow/engine/retry.py
"""RetryManager: Retry logic with tenacity integration.

Provides the re-attempt policy for task execution:
- Exponential backoff with jitter
- Per-task attempt budget (retry budget + the first try)
- Retryable error filtering
- Attempt tracking through an on_retry callback
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

if TYPE_CHECKING:
    from shardflow.core.config import RetrySettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when a task's attempt budget is spent on retryable failures."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=3 means: try, retry, retry (3 total).
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: float = 1.0  # seconds
    exponential_base: float = 2.0  # backoff multiplier

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "RetrySettings", budget: int) -> "RetryConfig":
        """Factory from RetrySettings and a task's retry budget.

        Args:
            settings: Validated Pydantic settings model (backoff shape)
            budget: Re-attempts allowed after the first try

        Returns:
            RetryConfig with max_attempts = budget + 1
        """
        return cls(
            max_attempts=budget + 1,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
            exponential_base=settings.exponential_base,
        )


class RetryManager:
    """Manages retry logic for task execution.

    Uses tenacity for exponential backoff with jitter.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=3))

        result = manager.execute_with_retry(
            operation=lambda: executor.invoke(node, ctx),
            is_retryable=lambda e: isinstance(e, ExecutorError) and e.retryable,
            on_retry=lambda attempt, error: slog.warning("retry", attempt=attempt),
        )
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], object] = time.sleep) -> None:
        """Initialize with config.

        Args:
            config: Retry configuration
            sleep: Backoff sleep; the scheduler passes an interruptible wait
        """
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Operation to execute
            is_retryable: Function to check if error is retryable
            on_retry: Optional callback before each re-attempt (attempt, error)

        Returns:
            Result of operation

        Raises:
            MaxRetriesExceeded: If max attempts exceeded
            Exception: If non-retryable error occurs
        """
        attempt = 0
        last_error: BaseException | None = None

        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(self._config.max_attempts),
                wait=wait_exponential_jitter(
                    initial=self._config.base_delay,
                    max=self._config.max_delay,
                    exp_base=self._config.exponential_base,
                    jitter=self._config.jitter,
                ),
                retry=retry_if_exception(is_retryable),
                sleep=self._sleep,
                reraise=False,  # RetryError is converted to MaxRetriesExceeded below
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return operation()
                    except Exception as e:
                        last_error = e
                        # Only for errors that will actually be re-attempted
                        if on_retry and attempt < self._config.max_attempts and is_retryable(e):
                            on_retry(attempt, e)
                        raise

        except RetryError as e:
            # last_error is always set because RetryError means at least one attempt failed
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(attempt, final_error) from e

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
