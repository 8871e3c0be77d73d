"""Bounded retry with exponential backoff.

Used for calls to the identity provider, which can fail transiently. The
backoff wait blocks only the calling thread and holds no lock.
"""
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Base class for retry loop failures."""
    pass


class RetryExhaustedError(RetryError):
    """All attempts failed.

    Attributes:
        attempts: Number of attempts made
        last_error: Exception raised by the final attempt
    """

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


class RetryCancelledError(RetryError):
    """The cancel event was set while waiting between attempts."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Retry cancelled after {attempts} attempt(s)")


def backoff_delay(attempt: int, initial_delay: float) -> float:
    """Delay to wait after the given (1-based) failed attempt."""
    return initial_delay * (2 ** (attempt - 1))


def execute_with_retry(
    action: Callable[[], T],
    max_attempts: int,
    initial_delay: float,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Run action until it succeeds or max_attempts is reached.

    Between attempt k and k+1 the caller waits initial_delay * 2**(k-1)
    seconds: no wait before the first attempt, then 1x, 2x, 4x...

    Args:
        action: Zero-argument callable to run
        max_attempts: Total attempts allowed (>= 1)
        initial_delay: Wait in seconds after the first failure (>= 0)
        retry_on: Exception types that trigger another attempt; anything else propagates
        cancel_event: When set during a wait, the loop aborts with RetryCancelledError
        sleep: Wait function used when no cancel_event is given
        description: Label used in log lines

    Returns:
        The action's return value

    Raises:
        RetryExhaustedError: Every attempt failed (chained to the last failure)
        RetryCancelledError: cancel_event was set during a wait
        ValueError: Invalid max_attempts or initial_delay
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if initial_delay < 0:
        raise ValueError("initial_delay must not be negative")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return action()
        except retry_on as exc:
            last_error = exc
            if attempt == max_attempts:
                logger.error("%s failed after %d attempt(s): %s", description, attempt, exc)
                break

            delay = backoff_delay(attempt, initial_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs",
                description, attempt, max_attempts, exc, delay,
            )
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise RetryCancelledError(attempt, exc) from exc
            else:
                sleep(delay)

    raise RetryExhaustedError(max_attempts, last_error) from last_error
