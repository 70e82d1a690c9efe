"""Bounded polling and retry helpers."""

import threading
import time
from functools import wraps
from typing import Any, Callable, TypeVar

from cluster_hosting.exceptions import OperationTimeoutError, TransientProviderError
from cluster_hosting.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

OPERATION_TIMEOUT = 15 * 60
POLL_INTERVAL = 5.0


def wait_for(
    condition: Callable[[], bool],
    timeout: float = OPERATION_TIMEOUT,
    poll_interval: float = POLL_INTERVAL,
    cancel_event: threading.Event | None = None,
    description: str = "operation",
) -> bool:
    """Poll a condition until it holds.

    Args:
        condition: Returns True once the wait is satisfied; may raise to abort
        timeout: Seconds before giving up
        poll_interval: Seconds between polls
        cancel_event: Cancellation flag checked before every poll
        description: Text used in log and error messages

    Returns:
        True when the condition holds, False when cancelled

    Raises:
        OperationTimeoutError: If the timeout elapses first
    """
    deadline = time.monotonic() + timeout

    while True:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Wait for {description} cancelled")
            return False

        if condition():
            return True

        if time.monotonic() >= deadline:
            raise OperationTimeoutError(
                f"Timed out waiting for {description}",
                f"The condition did not hold within {timeout:g} seconds.",
            )

        logger.debug(f"Waiting for {description}")
        if cancel_event is not None:
            cancel_event.wait(poll_interval)
        else:
            time.sleep(poll_interval)


def retry_transient(
    max_attempts: int = 5,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry decorator for provider calls that fail transiently.

    TransientProviderError is retried with exponential backoff; any other
    exception, and the last transient one, propagates.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        initial_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier for the delay between retries
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception = None
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except TransientProviderError as e:
                    last_exception = e

                    if attempt == max_attempts:
                        logger.warning(
                            f"Transient error - max retries ({max_attempts}) exhausted for "
                            f"{func.__name__}: {e.message}"
                        )
                        raise

                    logger.info(
                        f"Transient error (attempt {attempt}/{max_attempts}) for {func.__name__} "
                        f"- retrying in {delay:.2f}s: {e.message}"
                    )
                    time.sleep(delay)
                    delay *= backoff_factor

            raise last_exception  # type: ignore

        return wrapper

    return decorator
