"""
Bounded exponential-backoff retry.

``with_retry`` is a plain function of the operation, a ``RetryPolicy`` value
and a retryable-error predicate, built on tenacity's ``AsyncRetrying``. It
keeps no state between calls.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from app.errors import JobCancelledError


T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt in seconds; doubles
            for every further attempt
    """
    max_attempts: int = 3
    base_delay: float = 1.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def wait(self) -> wait_exponential:
        """base * 2^(attempt-1) after failed attempt ``attempt``."""
        return wait_exponential(multiplier=self.base_delay, exp_base=2, min=0)


def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise JobCancelledError("Cancelled during backoff")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.

    Only errors accepted by ``is_retryable`` are retried; any other error
    propagates at once. After the last attempt the error propagates as is.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt cap and backoff base
        is_retryable: Predicate over the raised exception
        on_retry: Called with ``(attempt, delay, error)`` before each wait
        cancel_event: Checked around every backoff wait; raises JobCancelledError when set
        sleep: Sleep coroutine
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        if on_retry is not None:
            on_retry(retry_state.attempt_number, retry_state.next_action.sleep, retry_state.outcome.exception())

    async def wait(delay: float) -> None:
        _check_cancelled(cancel_event)
        await sleep(delay)
        _check_cancelled(cancel_event)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep,
        sleep=wait,
        reraise=True,
    )
    return await retrying(operation)
