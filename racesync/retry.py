"""Bounded exponential-backoff retry for the credential handshake."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .classifier import ErrorClassifier
from .errors import SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Retry an async operation on transient network failures only.

    Between attempts the policy waits ``delay`` seconds and then multiplies
    the delay by ``backoff`` for the next wait. Any failure that does not
    classify as a transient network error aborts immediately.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 1.0,
        backoff: float = 1.5,
        classifier: ErrorClassifier | None = None,
        sleep: SleepFunc | None = None,
    ):
        """Initialize the retry policy.

        Args:
            max_attempts: Total attempts, including the first one.
            delay: Wait before the second attempt, in seconds.
            backoff: Multiplier applied to the delay after each wait.
            classifier: Classifier for raw exceptions.
            sleep: Awaitable sleep, replaceable in tests.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.backoff = backoff
        self._classifier = classifier or ErrorClassifier()
        self._sleep = sleep or asyncio.sleep

    def delays(self) -> list[float]:
        """Waits the policy would perform if every attempt failed."""
        waits = []
        delay = self.delay
        for _ in range(self.max_attempts - 1):
            waits.append(delay)
            delay *= self.backoff
        return waits

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "request",
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine function to call per attempt.
            description: Name used in log messages.

        Returns:
            The operation's result.

        Raises:
            SyncError: The classified error of the last failed attempt.
        """
        delay = self.delay
        last_error: SyncError | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                error = self._classifier.classify(e)
                last_error = error
                if not error.retryable:
                    if error is e:
                        raise
                    raise error from e
                if attempt == self.max_attempts:
                    break
                logger.warning(
                    f"{description} failed ({error.detail or error.message}), "
                    f"attempt {attempt}/{self.max_attempts}, retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                delay *= self.backoff

        logger.error(f"{description} failed after {self.max_attempts} attempts")
        raise last_error
