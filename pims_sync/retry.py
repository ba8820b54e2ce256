"""Retry an async operation with exponential backoff and jitter, on top of tenacity."""
from __future__ import annotations
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import error_message, is_retryable_error

T = TypeVar("T")

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
MAX_JITTER = 0.3


@dataclass
class RetryResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0


def default_jitter() -> float:
    """Uniform in ``[0, MAX_JITTER)``."""
    return random.random() * MAX_JITTER


def compute_backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = 0.0,
) -> float:
    """Delay (seconds) to wait after the 0-indexed ``attempt`` failed."""
    return min(base_delay * (2 ** attempt) * (1 + jitter), max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[BaseException, int, float], Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    jitter: Callable[[], float] = default_jitter,
) -> RetryResult[T]:
    """Run ``operation`` up to ``max_retries + 1`` times.

    Never raises for failures of ``operation`` itself: the last error is
    returned on the result and callers check ``success``. Errors that
    ``should_retry`` rejects stop the loop straight away. Cancellation
    always propagates.
    """
    attempts = 0
    exhausted: Optional[RetryResult[T]] = None

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await operation()

    def wait(state: RetryCallState) -> float:
        return compute_backoff_delay(state.attempt_number - 1, base_delay, max_delay, jitter())

    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception()
        delay = state.next_action.sleep
        if on_retry is not None:
            on_retry(error, state.attempt_number, delay)
        else:
            logger.debug("Retrying operation", attempt=state.attempt_number, delay=round(delay, 3),
                         error=error_message(error))

    def give_up(state: RetryCallState) -> None:
        nonlocal exhausted
        exhausted = RetryResult(success=False, error=state.outcome.exception(), attempts=state.attempt_number)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait,
        retry=retry_if_exception(lambda exc: isinstance(exc, Exception) and should_retry(exc)),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=False,
        retry_error_callback=give_up,
    )

    try:
        outcome = await retrying(attempt)
    except Exception as exc:
        # rejected by should_retry: tenacity hands the error straight back
        return RetryResult(success=False, error=exc, attempts=attempts)

    if exhausted is not None:
        return exhausted
    return RetryResult(success=True, data=outcome, attempts=attempts)
