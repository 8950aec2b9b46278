"""Retry driver with exponential backoff."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from conductor_core.cancellation import CancellationToken, run_cancellable
from conductor_core.exceptions import AuthError, OperationCancelledError
from conductor_obs.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retry number `attempt + 1` (attempt is 0-based)."""
    return base * 2**attempt


def is_retryable(error: BaseException) -> bool:
    return not isinstance(error, (AuthError, OperationCancelledError))


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    retry_attempts: int,
    retry_delay: float,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    cancel_token: CancellationToken | None = None,
    operation_name: str = "operation",
) -> T:
    """Run `operation` up to `retry_attempts + 1` times.

    Args:
        operation: Coroutine factory receiving the 0-based attempt number
        retry_attempts: Additional tries after the first
        retry_delay: Backoff base in seconds
        should_retry: Predicate; False re-raises immediately
        cancel_token: Aborts the backoff sleep when fired

    Raises:
        The last error once attempts are exhausted
    """
    attempt = 0
    while True:
        try:
            return await operation(attempt)
        except Exception as e:
            if not should_retry(e) or attempt >= retry_attempts:
                raise
            delay = backoff_delay(attempt, retry_delay)
            logger.debug(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt + 1,
                delay=delay,
                error=str(e),
            )
            await run_cancellable(asyncio.sleep(delay), cancel_token)
            attempt += 1
