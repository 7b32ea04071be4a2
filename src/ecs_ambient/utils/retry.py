"""Retry and polling utilities for ecs-ambient."""

import time
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from ecs_ambient.core.exceptions import WaitTimeoutError
from ecs_ambient.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")


def retry_on_exception(
    exceptions: tuple[type[Exception], ...] = (Exception,),
    max_attempts: int = 3,
    min_wait: int = 1,
    max_wait: int = 10,
) -> Callable[[F], F]:
    """Decorator to retry a function on specific exceptions.

    Args:
        exceptions: Tuple of exception types to retry on
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Returns:
        Decorated function with retry logic
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        """Log before sleeping between retries."""
        if retry_state.outcome and retry_state.outcome.failed:
            exception = retry_state.outcome.exception()
            logger.warning(
                "retry_attempt",
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                exception=type(exception).__name__,
                message=str(exception),
            )

    return retry(
        retry=retry_if_exception_type(exceptions),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        before_sleep=before_sleep,
        sleep=lambda seconds: _sleep(seconds),
        reraise=True,
    )


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def pause(seconds: float, reason: str) -> None:
    """Sleep for a fixed settle period, logging why.

    Args:
        seconds: Seconds to wait
        reason: Short description of what is settling
    """
    logger.info("waiting", seconds=seconds, reason=reason)
    _sleep(seconds)


def poll_until(
    check: Callable[[], T],
    timeout: int,
    interval: int,
    description: str,
    done: Callable[[T], bool] = bool,
    raise_on_timeout: bool = True,
    log_every: int | None = None,
) -> T:
    """Call ``check`` at a fixed interval until ``done(result)`` holds.

    The number of attempts is ``timeout // interval + 1`` so a poll of
    120 seconds at 10 second intervals checks thirteen times, the same as a
    counter-based wait loop.

    Args:
        check: Zero-argument callable returning the observed state
        timeout: Total seconds to keep polling
        interval: Seconds between checks
        description: What is being waited for (used in logs and errors)
        done: Predicate deciding whether the observed state is final
        raise_on_timeout: Raise WaitTimeoutError instead of returning the last state
        log_every: Only log progress every N seconds (defaults to every check)

    Returns:
        The last observed state

    Raises:
        WaitTimeoutError: If the state never satisfied ``done`` and raise_on_timeout is set
    """
    attempts = max(1, timeout // max(interval, 1) + 1)

    def before_sleep(retry_state: RetryCallState) -> None:
        elapsed = retry_state.attempt_number * interval
        if log_every and elapsed % log_every:
            return
        state = retry_state.outcome.result() if retry_state.outcome else None
        logger.info(
            "waiting_for",
            description=description,
            elapsed=elapsed,
            timeout=timeout,
            state=state,
        )

    retrying = Retrying(
        retry=retry_if_result(lambda result: not done(result)),
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(interval),
        before_sleep=before_sleep,
        sleep=_sleep,
        reraise=True,
    )

    try:
        return retrying(check)
    except RetryError as e:
        last = e.last_attempt.result()
        logger.warning("wait_timed_out", description=description, timeout=timeout, state=last)
        if raise_on_timeout:
            raise WaitTimeoutError(f"Timed out after {timeout}s waiting for {description}") from e
        return last
