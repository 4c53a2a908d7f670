"""
Retry primitive built on tenacity.

One policy object drives every retried call. Fatal errors (see errors.is_fatal)
propagate on the first failure; everything else is retried with exponential
backoff and optional jitter until the policy is exhausted.
"""

import asyncio
import functools
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt

from .errors import RetryExhaustedError, is_fatal, is_replacement_underpriced
from .utils import logger, sanitize_error_message

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. Delays are in seconds."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def with_overrides(self, **changes: Any) -> "RetryPolicy":
        return replace(self, **changes)


# Reads are cheap and idempotent
RPC_READ_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0)
# Resubmitting a transaction risks a double spend, so keep this short
TX_SUBMIT_POLICY = RetryPolicy(max_retries=2, base_delay=2.0, max_delay=30.0)
# Status polling: many attempts, short waits
POLLING_POLICY = RetryPolicy(max_retries=10, base_delay=1.0, max_delay=5.0)
# Third-party HTTP APIs (quotes, exchange)
API_POLICY = RetryPolicy(max_retries=5, base_delay=0.5, max_delay=10.0)


def compute_delay(policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None) -> float:
    """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
    delay = min(policy.base_delay * policy.multiplier ** (attempt - 1), policy.max_delay)
    if policy.jitter and delay > 0:
        delay += (rng or random).uniform(0, delay * 0.1)
    return delay


def _should_retry(exc: BaseException) -> bool:
    # Replacement-underpriced has its own gas bump path in chain.TransactionSender
    return not is_fatal(exc) and not is_replacement_underpriced(exc)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RPC_READ_POLICY,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """
    Await `fn()` under `policy`.

    Raises the original exception for fatal errors and RetryExhaustedError
    (carrying attempts and accumulated delay) once retries run out.
    """
    total_delay = 0.0

    def wait(retry_state) -> float:
        nonlocal total_delay
        delay = compute_delay(policy, retry_state.attempt_number, rng)
        total_delay += delay
        return delay

    def before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception()
        logger.warning(
            f"{label} failed (attempt {retry_state.attempt_number}/{policy.max_retries}): "
            f"{sanitize_error_message(exc, 160)}"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_retries)),
        wait=wait,
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep,
        sleep=sleep,
    )

    try:
        async for attempt in retrying:
            with attempt:
                return await fn()
    except RetryError as e:
        last_attempt = e.last_attempt
        raise RetryExhaustedError(
            last_attempt.exception(),
            attempts=last_attempt.attempt_number,
            total_delay=total_delay,
            label=label,
        ) from last_attempt.exception()
    raise AssertionError("unreachable")  # pragma: no cover


def with_retry(policy: RetryPolicy = RPC_READ_POLICY, label: Optional[str] = None):
    """Decorator form of retry_async for coroutine functions."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                policy=policy,
                label=label or func.__name__,
            )
        return wrapper
    return decorator
