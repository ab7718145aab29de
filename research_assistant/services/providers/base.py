from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from research_assistant.research.errors import ProviderPermanentError, ProviderTransientError
from research_assistant.research.retry import Sleep, retry_with_backoff
from research_assistant.services import logger as log_service

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(slots=True)
class ProviderRunRequest:
    final_prompt: str
    session_id: str | None = None  # provider-side session handle (OpenAI refinement)
    topic: str = ""
    answers: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ProviderRunOutput:
    payload: dict[str, Any]
    job_id: str | None = None


class ProviderClient(Protocol):
    name: str

    async def run(self, request: ProviderRunRequest) -> ProviderRunOutput: ...


def parse_retry_after(value: str | None) -> int | None:
    """Convert a Retry-After header (seconds or HTTP date) into milliseconds."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    if seconds <= 0:
        return None
    return int(seconds * 1000)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return None


def raise_for_provider_status(response: httpx.Response, *, provider: str, operation: str) -> None:
    """Map an unsuccessful response to a transient or permanent provider error."""
    if response.is_success:
        return

    body = _safe_json(response)
    detail = json.dumps(body) if body is not None else response.text[:500]
    message = f"{provider}.{operation} failed with status {response.status_code}: {detail}"

    if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
        raise ProviderTransientError(
            message,
            provider=provider,
            status_code=response.status_code,
            retry_after_ms=parse_retry_after(response.headers.get("retry-after")),
        )
    raise ProviderPermanentError(message, provider=provider, status_code=response.status_code)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    operation: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """Issue one request and return its JSON object body, classifying every failure."""
    started = time.monotonic()
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        log_service.log_provider_call(provider, operation, status="timeout", error=str(exc))
        raise ProviderTransientError(
            f"{provider}.{operation} timed out", provider=provider
        ) from exc
    except httpx.TransportError as exc:
        log_service.log_provider_call(provider, operation, status="transport_error", error=str(exc))
        raise ProviderTransientError(
            f"{provider}.{operation} transport error: {exc}", provider=provider
        ) from exc

    duration_ms = int((time.monotonic() - started) * 1000)
    try:
        raise_for_provider_status(response, provider=provider, operation=operation)
    except (ProviderTransientError, ProviderPermanentError) as exc:
        log_service.log_provider_call(
            provider,
            operation,
            duration_ms=duration_ms,
            status="error",
            error=exc.message,
            status_code=response.status_code,
        )
        raise

    log_service.log_provider_call(provider, operation, duration_ms=duration_ms)
    payload = _safe_json(response)
    if not isinstance(payload, dict):
        raise ProviderPermanentError(
            f"{provider}.{operation} returned a non-object JSON body", provider=provider
        )
    return payload


class RunPendingError(ProviderTransientError):
    """The provider accepted the run but has not produced a result yet."""


def _is_pollable(error: BaseException) -> bool:
    return isinstance(error, RunPendingError) or type(error) is ProviderTransientError


async def poll_until_done(
    fetch: Any,
    *,
    provider: str,
    operation: str,
    max_attempts: int,
    initial_delay_ms: int,
    sleep: Sleep = asyncio.sleep,
) -> dict[str, Any]:
    """Poll ``fetch`` with backoff until it returns a payload.

    ``fetch`` raises :class:`RunPendingError` while the run is still in
    progress. Transient HTTP failures are polled through as well; any other
    error ends polling immediately. Running out of polls is permanent whatever
    the last poll saw, so an outer retry does not start a duplicate run.
    """
    try:
        return await retry_with_backoff(
            fetch,
            max_attempts=max_attempts,
            initial_delay_ms=initial_delay_ms,
            should_retry=lambda error, _context: _is_pollable(error),
            on_retry=lambda error, ctx: log_service.log_event(
                event_type="provider_poll",
                message=f"{provider}.{operation} not ready",
                provider=provider,
                attempt=ctx.attempt,
                max_attempts=ctx.max_attempts,
                delay_ms=ctx.delay_ms,
                reason=str(error),
            ),
            sleep=sleep,
        )
    except ProviderTransientError as exc:
        if not _is_pollable(exc):
            raise
        raise ProviderPermanentError(
            f"{provider}.{operation} result not ready after {max_attempts} attempts: {exc.message}",
            provider=provider,
            status_code=exc.status_code,
        ) from exc
