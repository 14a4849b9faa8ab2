"""Retry with capped exponential backoff."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Configuration for retry behavior."""

    max_retries: int = 3  # total attempts
    initial_delay: float = 1.0  # seconds
    factor: float = 2.0
    max_delay: float = 10.0  # seconds

    def delay(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt`` failed."""
        return min(self.initial_delay * self.factor**attempt, self.max_delay)

    def delays(self) -> list[float]:
        """Every delay this policy will sleep, in order."""
        return [self.delay(attempt) for attempt in range(max(self.max_retries - 1, 0))]


class BackoffExecutor:
    """Runs an async operation, retrying failures with exponential backoff.

    The exception from the final attempt is re-raised unchanged so callers
    see the real cause.
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Retry configuration.
            sleep: Awaitable used between attempts (replaceable in tests).
        """
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> T:
        """Execute ``operation`` until it succeeds or attempts run out.

        Args:
            operation: Zero-argument coroutine function.
            operation_name: Name for logging.
            retry_on: Exception types worth retrying; others propagate at once.

        Returns:
            The operation's result.
        """
        attempts = max(self.policy.max_retries, 1)

        for attempt in range(attempts):
            try:
                return await operation()
            except retry_on as e:
                if attempt == attempts - 1:
                    logger.warning(
                        "Operation failed, no retries left",
                        operation=operation_name,
                        attempts=attempts,
                        error=str(e),
                    )
                    raise

                delay = self.policy.delay(attempt)
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")
