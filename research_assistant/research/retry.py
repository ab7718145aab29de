"""Retry with exponential backoff for provider and transport calls.

The retrier knows nothing about HTTP. Callers classify failures by raising
either an ordinary exception (retried) or a :class:`NonRetryableError`
(aborts immediately). An error that carries a positive ``retry_after_ms``
attribute overrides the computed delay for that single retry.
"""
from __future__ import annotations

import asyncio
import inspect
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from research_assistant.research.errors import NonRetryableError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryCallContext:
    attempt: int  # 1-based
    max_attempts: int


@dataclass(frozen=True, slots=True)
class RetryAttemptContext:
    attempt: int  # the attempt that just failed
    max_attempts: int
    delay_ms: int


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 500
    multiplier: float = 2.0


Operation = Callable[[RetryCallContext], Awaitable[T]]
OnRetry = Callable[[BaseException, RetryAttemptContext], Any]
ShouldRetry = Callable[[BaseException, RetryAttemptContext], bool]
Sleep = Callable[[float], Awaitable[Any]]


def default_should_retry(error: BaseException, _context: RetryAttemptContext) -> bool:
    return not isinstance(error, NonRetryableError)


def retry_after_hint(error: BaseException) -> int | None:
    """Return the error's ``retry_after_ms`` if it is a usable positive number."""
    value = getattr(error, "retry_after_ms", None)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return int(math.ceil(value))


def backoff_delay_ms(initial_delay_ms: int, multiplier: float, failed_attempt: int) -> int:
    return int(initial_delay_ms * (multiplier ** (failed_attempt - 1)))


async def retry_with_backoff(
    operation: Operation[T],
    *,
    max_attempts: int = 3,
    initial_delay_ms: int = 500,
    multiplier: float = 2.0,
    on_retry: OnRetry | None = None,
    should_retry: ShouldRetry | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if initial_delay_ms < 0:
        raise ValueError("initial_delay_ms must not be negative")

    should_retry = should_retry or default_should_retry

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation(RetryCallContext(attempt=attempt, max_attempts=max_attempts))
        except Exception as exc:
            if isinstance(exc, NonRetryableError) or attempt >= max_attempts:
                raise

            delay_ms = retry_after_hint(exc)
            if delay_ms is None:
                delay_ms = backoff_delay_ms(initial_delay_ms, multiplier, attempt)
            context = RetryAttemptContext(
                attempt=attempt,
                max_attempts=max_attempts,
                delay_ms=delay_ms,
            )

            if not should_retry(exc, context):
                raise

            if on_retry is not None:
                outcome = on_retry(exc, context)
                if inspect.isawaitable(outcome):
                    await outcome

            await sleep(delay_ms / 1000)

    raise AssertionError("unreachable")  # pragma: no cover


async def retry_with_policy(
    operation: Operation[T],
    policy: RetryPolicy,
    *,
    on_retry: OnRetry | None = None,
    should_retry: ShouldRetry | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    return await retry_with_backoff(
        operation,
        max_attempts=policy.max_attempts,
        initial_delay_ms=policy.initial_delay_ms,
        multiplier=policy.multiplier,
        on_retry=on_retry,
        should_retry=should_retry,
        sleep=sleep,
    )
