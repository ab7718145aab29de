from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

import httpx

from research_assistant.research.errors import ProviderPermanentError
from research_assistant.research.retry import RetryCallContext, Sleep
from research_assistant.services.logger import logger
from research_assistant.services.providers.base import (
    ProviderRunOutput,
    ProviderRunRequest,
    RunPendingError,
    poll_until_done,
    request_json,
)

PROVIDER = "gemini"


class GeminiClient:
    """generateContent client. Long-running operations are polled until done."""

    name = PROVIDER

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        poll_max_attempts: int = 10,
        poll_initial_delay_ms: int = 1000,
        generation_config: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.poll_max_attempts = poll_max_attempts
        self.poll_initial_delay_ms = poll_initial_delay_ms
        self.generation_config = generation_config
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    async def generate_content(self, prompt: str) -> tuple[dict[str, Any], str | None]:
        """Return the finished payload and the operation name, if one was polled."""
        body: dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        if self.generation_config:
            body["generationConfig"] = self.generation_config

        logger.info(f"Gemini generateContent ({self.model}, prompt length {len(prompt)})")
        data = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/models/{quote(self.model, safe='')}:generateContent",
            provider=PROVIDER,
            operation="generate_content",
            headers=self._headers(),
            json=body,
        )

        if isinstance(data.get("candidates"), list):
            return data, None
        if data.get("done") is True and isinstance(data.get("response"), dict):
            return data["response"], data.get("name")

        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ProviderPermanentError(
                "Gemini generateContent response did not include candidates or operation name",
                provider=PROVIDER,
            )
        return await self.poll_operation(name), name

    async def poll_operation(self, operation_name: str) -> dict[str, Any]:
        url = f"{self.base_url}/{operation_name.lstrip('/')}"

        async def fetch(context: RetryCallContext) -> dict[str, Any]:
            data = await request_json(
                self._client,
                "GET",
                url,
                provider=PROVIDER,
                operation="poll_operation",
                headers={"x-goog-api-key": self.api_key},
            )
            error = data.get("error")
            if error:
                message = (
                    error.get("message")
                    if isinstance(error, dict) and isinstance(error.get("message"), str)
                    else "Gemini operation returned an error"
                )
                raise ProviderPermanentError(message, provider=PROVIDER)
            if data.get("done") is True:
                result = data.get("response") or data.get("result") or data
                return result if isinstance(result, dict) else data
            raise RunPendingError(
                f"operation {operation_name} still running "
                f"(poll {context.attempt}/{context.max_attempts})",
                provider=PROVIDER,
            )

        return await poll_until_done(
            fetch,
            provider=PROVIDER,
            operation="poll_operation",
            max_attempts=self.poll_max_attempts,
            initial_delay_ms=self.poll_initial_delay_ms,
            sleep=self._sleep,
        )

    async def run(self, request: ProviderRunRequest) -> ProviderRunOutput:
        payload, operation_name = await self.generate_content(request.final_prompt)
        return ProviderRunOutput(payload=payload, job_id=operation_name)
