"""Utility functions and helpers for kubeboot."""
import logging
import socket
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import ReadinessTimeoutError, TransientReadinessError
from .runner import CommandRunner

T = TypeVar('T')

logger = logging.getLogger("kubeboot.utils")


def retry_with_timeout(
    operation: Callable[[], T],
    interval: float,
    timeout: Optional[float] = None,
    attempts: Optional[int] = None,
    description: str = "condition",
    retry_on: Tuple[Type[Exception], ...] = (TransientReadinessError,),
    error_cls: Type[ReadinessTimeoutError] = ReadinessTimeoutError,
    component: Optional[str] = None,
    step: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Poll ``operation`` until it returns something truthy.

    Every wait in the bootstrap goes through here: a blocking
    sleep-and-recheck loop with a fixed interval, bounded by a deadline,
    an attempt cap, or both. The last sleep is shortened so the loop never
    overshoots the deadline by more than one call to ``operation``.

    Args:
        operation: Probe to call; a falsy result means "not yet"
        interval: Seconds between attempts
        timeout: Deadline in seconds, measured from the first attempt
        attempts: Maximum number of attempts
        description: What is being waited for, used in log lines and errors
        retry_on: Exceptions from ``operation`` treated as "not yet"
        error_cls: Exception raised when the budget is exhausted
        component: Component name attached to the raised error
        step: Step name attached to the raised error
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        The first truthy value returned by ``operation``

    Raises:
        ReadinessTimeoutError: (or ``error_cls``) once the budget is exhausted
    """
    if timeout is None and attempts is None:
        raise ValueError("retry_with_timeout needs a timeout, an attempt cap, or both")
    if interval <= 0:
        raise ValueError("interval must be positive")

    start = clock()
    attempt = 0
    last_error: Optional[Exception] = None

    while True:
        attempt += 1
        try:
            result = operation()
        except retry_on as e:
            result = None
            last_error = e
            logger.debug(f"{description} not ready yet: {e}")

        if result:
            return result

        elapsed = clock() - start
        if attempts is not None and attempt >= attempts:
            break

        delay = interval
        if timeout is not None:
            remaining = timeout - elapsed
            if remaining <= 0:
                break
            delay = min(interval, remaining)

        if attempts is not None:
            logger.info(f"⏳ Waiting for {description}... ({attempt}/{attempts})")
        else:
            logger.info(f"⏳ Waiting for {description}... ({int(elapsed)}/{int(timeout)}s)")
        sleep(delay)

    elapsed = clock() - start
    message = f"{description} not ready after {attempt} attempt(s) / {elapsed:.0f}s"
    if last_error is not None:
        message += f". Last error: {last_error}"
    raise error_cls(message, attempts=attempt, elapsed=elapsed, component=component, step=step)


def detect_primary_address() -> str:
    """Get the address of the interface that carries the default route.

    Returns:
        str: IPv4 address or '127.0.0.1' if detection fails
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # no packet is sent; connect() on UDP only selects the route
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    except OSError as e:
        logger.warning(f"Failed to detect primary address: {e}")
        return '127.0.0.1'
    finally:
        s.close()


__all__ = [
    'CommandRunner',
    'detect_primary_address',
    'retry_with_timeout',
]
