from __future__ import annotations

import pytest

from research_assistant.research.errors import NonRetryableError, ProviderTransientError
from research_assistant.research.retry import RetryPolicy, retry_with_backoff, retry_with_policy


class RecordingSleep:
    def __init__(self):
        self.delays_ms: list[int] = []

    async def __call__(self, seconds: float) -> None:
        self.delays_ms.append(round(seconds * 1000))


@pytest.mark.asyncio
async def test_retries_with_exponential_backoff_until_success():
    sleep = RecordingSleep()
    calls: list[int] = []
    retries: list[tuple[int, int]] = []

    async def operation(context):
        calls.append(context.attempt)
        if context.attempt < 3:
            raise RuntimeError(f"boom {context.attempt}")
        return "ok"

    result = await retry_with_backoff(
        operation,
        max_attempts=3,
        initial_delay_ms=100,
        on_retry=lambda error, ctx: retries.append((ctx.attempt, ctx.delay_ms)),
        sleep=sleep,
    )

    assert result == "ok"
    assert calls == [1, 2, 3]
    assert retries == [(1, 100), (2, 200)]
    assert sleep.delays_ms == [100, 200]


@pytest.mark.asyncio
async def test_non_retryable_error_aborts_immediately():
    sleep = RecordingSleep()
    calls = 0

    class Rejected(NonRetryableError):
        pass

    async def operation(_context):
        nonlocal calls
        calls += 1
        raise Rejected("bad request")

    with pytest.raises(Rejected):
        await retry_with_backoff(operation, max_attempts=5, sleep=sleep)

    assert calls == 1
    assert sleep.delays_ms == []


@pytest.mark.asyncio
async def test_exhaustion_reraises_last_error_without_final_on_retry():
    sleep = RecordingSleep()
    retries: list[int] = []
    errors = [RuntimeError("first"), RuntimeError("second")]

    async def operation(context):
        raise errors[context.attempt - 1]

    with pytest.raises(RuntimeError) as exc_info:
        await retry_with_backoff(
            operation,
            max_attempts=2,
            initial_delay_ms=10,
            on_retry=lambda _error, ctx: retries.append(ctx.attempt),
            sleep=sleep,
        )

    assert exc_info.value is errors[1]
    assert retries == [1]


@pytest.mark.asyncio
async def test_retry_after_overrides_delay_for_one_retry_only():
    sleep = RecordingSleep()

    async def operation(context):
        if context.attempt == 1:
            raise ProviderTransientError("slow down", provider="openai", retry_after_ms=1500)
        if context.attempt == 2:
            raise ProviderTransientError("again", provider="openai")
        return "done"

    result = await retry_with_backoff(
        operation, max_attempts=3, initial_delay_ms=100, sleep=sleep
    )

    assert result == "done"
    assert sleep.delays_ms == [1500, 200]


@pytest.mark.asyncio
async def test_should_retry_can_veto():
    sleep = RecordingSleep()

    async def operation(_context):
        raise ValueError("not worth retrying")

    with pytest.raises(ValueError):
        await retry_with_backoff(
            operation,
            max_attempts=4,
            should_retry=lambda error, _ctx: not isinstance(error, ValueError),
            sleep=sleep,
        )
    assert sleep.delays_ms == []


@pytest.mark.asyncio
async def test_async_on_retry_is_awaited():
    sleep = RecordingSleep()
    seen: list[int] = []

    async def on_retry(_error, ctx):
        seen.append(ctx.attempt)

    async def operation(context):
        if context.attempt == 1:
            raise RuntimeError("once")
        return context.attempt

    assert await retry_with_backoff(operation, on_retry=on_retry, sleep=sleep) == 2
    assert seen == [1]


@pytest.mark.asyncio
async def test_invalid_configuration_is_rejected():
    async def operation(_context):
        return None

    with pytest.raises(ValueError):
        await retry_with_backoff(operation, max_attempts=0)
    with pytest.raises(ValueError):
        await retry_with_backoff(operation, initial_delay_ms=-1)


@pytest.mark.asyncio
async def test_retry_with_policy_uses_policy_values():
    sleep = RecordingSleep()

    async def operation(context):
        if context.attempt < 2:
            raise RuntimeError("retry me")
        return context.max_attempts

    result = await retry_with_policy(
        operation, RetryPolicy(max_attempts=4, initial_delay_ms=50, multiplier=3), sleep=sleep
    )
    assert result == 4
    assert sleep.delays_ms == [50]
