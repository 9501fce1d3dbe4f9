"""Bounded retry of durable store operations.

This module wraps database work in an explicit attempt loop. Errors are
classified as transient (connection drops, pool and statement timeouts) or
permanent (constraint violations, programming errors). Transient errors are
retried with exponential backoff and jitter; permanent errors propagate on
the first occurrence.
"""

import random
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import exc as sa_exc

from canvass.config import Settings
from canvass.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetriesExhaustedError(Exception):
    """Raised when a transient failure persists through every attempt."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")


class PartialPersistenceError(Exception):
    """Raised when a response row was stored but its answers were not.

    Attributes:
        response_id: Id of the orphaned response row
        persisted_answer_count: Answers stored before the failure
        expected_answer_count: Answers the response should have
        cause: Underlying failure
    """

    def __init__(
        self,
        response_id: str,
        persisted_answer_count: int,
        expected_answer_count: int,
        cause: BaseException
    ):
        self.response_id = response_id
        self.persisted_answer_count = persisted_answer_count
        self.expected_answer_count = expected_answer_count
        self.cause = cause
        super().__init__(
            f"Response {response_id} stored with {persisted_answer_count}/"
            f"{expected_answer_count} answers: {cause}"
        )


def is_transient(error: BaseException) -> bool:
    """Decide whether an error is worth retrying.

    Args:
        error: Exception raised by a store operation

    Returns:
        True for connection, pool and timeout failures

    Example:
        >>> is_transient(ConnectionResetError())
        True
        >>> is_transient(ValueError("bad"))
        False
    """
    if isinstance(error, (sa_exc.OperationalError, sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    # ConnectionResetError and friends are ConnectionError subclasses
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    return False


class ResilientExecutor:
    """Runs store operations with bounded retries.

    Usage:
        executor = ResilientExecutor(max_attempts=3)
        row = executor.execute(lambda: repo.create_response(...), "create response")
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: int = 200,
        max_delay_ms: int = 5000,
        jitter: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None
    ):
        """Initialize executor.

        Args:
            max_attempts: Total attempts including the first
            base_delay_ms: Delay before the first retry
            max_delay_ms: Cap on a single delay (before jitter)
            jitter: Relative random spread applied to each delay
            sleep: Sleep function (injectable for tests)
            rng: Random source for jitter
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResilientExecutor":
        return cls(
            max_attempts=settings.persistence_max_attempts,
            base_delay_ms=settings.persistence_base_delay_ms,
            max_delay_ms=settings.persistence_max_delay_ms,
        )

    def backoff_ms(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), with jitter."""
        delay = min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)
        spread = delay * self.jitter
        return max(0.0, delay + self._rng.uniform(-spread, spread))

    def execute(self, operation: Callable[[], T], description: str = "store operation") -> T:
        """Run operation, retrying transient failures.

        Args:
            operation: Zero-argument callable doing the store work
            description: Human-readable name used in logs and errors

        Returns:
            Whatever operation returns

        Raises:
            RetriesExhaustedError: If every attempt failed transiently
            Exception: The first permanent error, unchanged
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = operation()
            except Exception as e:
                if not is_transient(e):
                    logger.debug(f"{description} failed permanently: {type(e).__name__}: {e}")
                    raise
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay_ms = self.backoff_ms(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay_ms:.0f}ms: {type(e).__name__}: {e}"
                )
                self._sleep(delay_ms / 1000)
                continue

            if attempt > 1:
                logger.info(f"{description} succeeded on attempt {attempt}")
            return result

        logger.error(f"{description} exhausted {self.max_attempts} attempts: {last_error}")
        raise RetriesExhaustedError(description, self.max_attempts, last_error)
