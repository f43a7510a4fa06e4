"""Retry, bounded polling and cancellation helpers."""
import logging
import random
import threading
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from k3sctl.errors import (
    ConfigurationError,
    OperationCancelled,
    PersistenceError,
    RetryExhausted,
    VerificationTimeout,
)

logger = logging.getLogger("k3sctl.retry")

T = TypeVar("T")

# Never retried, whatever ``retry_on`` says
NEVER_RETRY = (ConfigurationError, PersistenceError, OperationCancelled)


class CancelToken:
    """Run-wide cancellation flag shared by every task of a run."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)

    def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        if seconds > 0 and self._event.wait(seconds):
            raise OperationCancelled(self.reason)
        self.raise_if_cancelled()


def backoff_delay(attempt: int, initial_delay: float, max_delay: Optional[float] = None,
                  jitter: float = 0.0) -> float:
    """Delay after failed attempt number ``attempt`` (1-based)."""
    delay = initial_delay * (2 ** (attempt - 1))
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def with_retry(
    max_attempts: int,
    initial_delay: float,
    operation: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    max_delay: Optional[float] = None,
    jitter: float = 0.0,
    cancel: Optional[CancelToken] = None,
    sleep: Optional[Callable[[float], None]] = None,
    description: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    Args:
        max_attempts: Total number of attempts, at least 1
        initial_delay: Delay after the first failure; doubles each attempt
        operation: Zero-argument callable
        retry_on: Exception types that are retried
        max_delay: Upper bound for a single delay
        jitter: Maximum random seconds added to each delay
        cancel: Token checked before each attempt and during backoff
        sleep: Replacement for the backoff wait, mainly for tests
        description: Used in log messages
        on_retry: Callback(attempt, exception) after each failed attempt

    Returns:
        Whatever ``operation`` returns

    Raises:
        RetryExhausted: Every attempt failed with a retryable error
        OperationCancelled: The token was cancelled
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    cancel = cancel or CancelToken()
    wait = sleep or cancel.wait
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        cancel.raise_if_cancelled()
        try:
            return operation()
        except NEVER_RETRY:
            raise
        except retry_on as e:
            if not getattr(e, "retryable", True):
                raise
            last_error = e
            if on_retry:
                on_retry(attempt, e)
            if attempt == max_attempts:
                break
            delay = backoff_delay(attempt, initial_delay, max_delay, jitter)
            logger.warning(
                f"⏳ {description} failed (attempt {attempt}/{max_attempts}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            wait(delay)
            cancel.raise_if_cancelled()

    logger.error(f"❌ {description} failed after {max_attempts} attempts: {last_error}")
    raise RetryExhausted(max_attempts, last_error) from last_error


def poll_until(
    predicate: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    description: str,
    cancel: Optional[CancelToken] = None,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Callable[[], float] = time.monotonic,
    log_every: int = 12,
) -> None:
    """Poll ``predicate`` until it returns True or ``timeout`` elapses.

    Exceptions raised by the predicate count as "not yet"; fatal errors
    still propagate.

    Raises:
        VerificationTimeout: The condition did not hold in time
        OperationCancelled: The token was cancelled
    """
    cancel = cancel or CancelToken()
    wait = sleep or cancel.wait
    start = clock()
    checks = 0

    while True:
        cancel.raise_if_cancelled()
        checks += 1
        try:
            if predicate():
                logger.debug(f"{description}: condition met after {checks} check(s)")
                return
        except NEVER_RETRY:
            raise
        except Exception as e:
            logger.debug(f"{description}: not ready yet ({e})")

        elapsed = clock() - start
        if elapsed >= timeout:
            raise VerificationTimeout(description, timeout)
        if checks % log_every == 0:
            logger.info(f"⏳ Still waiting for {description} ({int(elapsed)}s/{int(timeout)}s)")
        wait(min(interval, max(timeout - elapsed, 0)))
