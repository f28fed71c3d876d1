"""Retry and bounded wait functionality."""

from collections.abc import Callable
import logging
import time
from typing import Any, TypeVar, cast

F = TypeVar("F", bound=Callable[..., Any])


class Retryable(BaseException):
    """Type of exception that can be retried."""

    pass


class TimedOut(Retryable, Exception):
    """A condition did not become true within its time budget."""


class retry:
    """Retry a particular callable.

    Returns a callable that will retry the callee up to N times,
    if the callee raises an exception of type Retryable.
    To be clear: if N == 0, then the function will not retry.
    So, to get three tries, you must pass N == 2.
    """

    def __init__(
        self,
        N: int,
        timeout: int | float = 0,
        retryable_exception: type[BaseException] = Retryable,
    ) -> None:
        """Initialize the retrier.

        Args:
        N: number of retries (0 = no retry)
        timeout: time to sleep between retries
        retryable_exception: type of exception to retry
        """
        self.N = N
        self.timeout = timeout
        self.retryable_exception = retryable_exception

    def __call__(self, kallable: F) -> F:
        """Return a function that will retry the callable."""

        def retryer(*a: Any, **kw: Any) -> Any:
            logger = logging.getLogger("retry")
            remaining = self.N
            while True:
                try:
                    return kallable(*a, **kw)
                except self.retryable_exception as e:
                    if remaining >= 1:
                        logger.error(
                            "Received retryable error %s running %s, "
                            "trying %s more times",
                            e,
                            kallable,
                            remaining,
                        )
                        time.sleep(self.timeout)
                    else:
                        raise
                remaining -= 1

        return cast(F, retryer)


def wait_for(
    condition: Callable[[], bool],
    timeout: float,
    interval: float = 0.5,
    what: str = "condition",
    clock: Callable[[], float] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> None:
    """Poll `condition` until it is true or `timeout` seconds have passed.

    The condition is always evaluated at least once, and once more after the
    deadline has passed.

    Raises:
      TimedOut: the condition was still false at the deadline.
    """
    clock = clock or time.monotonic
    sleep = sleep or time.sleep
    logger = logging.getLogger("retry")
    deadline = clock() + timeout
    while not condition():
        if clock() >= deadline:
            if condition():
                return
            raise TimedOut(f"timed out after {timeout} seconds waiting for {what}")
        logger.debug("Waiting for %s", what)
        sleep(interval)
