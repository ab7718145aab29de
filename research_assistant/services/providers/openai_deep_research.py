from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from research_assistant.models.research import RefinementQuestion
from research_assistant.research.errors import ProviderPermanentError, ProviderTransientError
from research_assistant.research.retry import RetryCallContext, Sleep
from research_assistant.services.logger import logger
from research_assistant.services.providers.base import (
    ProviderRunOutput,
    ProviderRunRequest,
    RunPendingError,
    poll_until_done,
    request_json,
)

PROVIDER = "openai"


class ProviderRunFailedError(ProviderTransientError):
    """The remote run finished in a failed state. A fresh run may succeed."""


@dataclass(slots=True)
class RefinementStart:
    session_id: str
    questions: list[RefinementQuestion]
    raw: Any = None


@dataclass(slots=True)
class RefinementReply:
    next_question: RefinementQuestion | None = None
    final_prompt: str | None = None
    raw: Any = None


@dataclass(slots=True)
class ExecutedRun:
    run_id: str
    status: str
    raw: Any = field(default=None, repr=False)


def _parse_questions(value: Any) -> list[RefinementQuestion]:
    if not isinstance(value, list):
        return []
    questions = []
    for position, item in enumerate(value, start=1):
        if isinstance(item, dict):
            index = item.get("index") if isinstance(item.get("index"), int) else position
            text = item.get("text") if isinstance(item.get("text"), str) else str(item)
        else:
            index, text = position, str(item)
        questions.append(RefinementQuestion(index=index, text=text))
    return questions


class OpenAIDeepResearchClient:
    """Client for the deep-research refinement and run endpoints.

    Every HTTP call is a single attempt; the scheduler's retrier decides
    whether a classified failure is worth another run. Polling for a run's
    result is bounded separately by ``poll_max_attempts``.
    """

    name = PROVIDER

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str = "",
        timeout: float = 60.0,
        poll_max_attempts: int = 10,
        poll_initial_delay_ms: int = 1000,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.poll_max_attempts = poll_max_attempts
        self.poll_initial_delay_ms = poll_initial_delay_ms
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def start_session(self, topic: str, context: str | None = None) -> RefinementStart:
        logger.info(f"OpenAI deep research: starting refinement session (topic length {len(topic)})")
        body: dict[str, Any] = {"topic": topic}
        if context:
            body["context"] = context
        if self.model:
            body["model"] = self.model

        data = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/deep-research/sessions",
            provider=PROVIDER,
            operation="start_session",
            headers=self._headers(),
            json=body,
        )

        session_id = data.get("id")
        if not isinstance(session_id, str) or not session_id:
            raise ProviderPermanentError(
                "OpenAI deep research session response did not include an id",
                provider=PROVIDER,
            )
        return RefinementStart(
            session_id=session_id,
            questions=_parse_questions(data.get("questions")),
            raw=data,
        )

    async def submit_answer(
        self,
        session_id: str,
        answer: str,
        **_context: Any,
    ) -> RefinementReply:
        if not session_id:
            raise ProviderPermanentError(
                "session_id is required to submit an answer", provider=PROVIDER
            )

        data = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/deep-research/sessions/{quote(session_id, safe='')}/responses",
            provider=PROVIDER,
            operation="submit_answer",
            headers=self._headers(),
            json={"answer": answer},
        )

        next_payload = data.get("next_question") or data.get("nextQuestion")
        next_question = None
        if next_payload:
            answered = data.get("questions_answered")
            fallback_index = answered + 1 if isinstance(answered, int) else 1
            if isinstance(next_payload, dict):
                index = next_payload.get("index")
                text = next_payload.get("text")
            else:
                index, text = None, None
            next_question = RefinementQuestion(
                index=index if isinstance(index, int) else fallback_index,
                text=text if isinstance(text, str) else str(next_payload),
            )

        final_prompt = data.get("final_prompt") or data.get("finalPrompt")
        if not isinstance(final_prompt, str) or not final_prompt.strip():
            final_prompt = None

        return RefinementReply(next_question=next_question, final_prompt=final_prompt, raw=data)

    async def execute_run(self, session_id: str, prompt: str) -> ExecutedRun:
        data = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/deep-research/sessions/{quote(session_id, safe='')}/runs",
            provider=PROVIDER,
            operation="execute_run",
            headers=self._headers(),
            json={"prompt": prompt},
        )
        run_id = data.get("id") or data.get("run_id")
        if not isinstance(run_id, str) or not run_id:
            raise ProviderPermanentError(
                "OpenAI deep research run response did not include an id",
                provider=PROVIDER,
            )
        status = data.get("status") if isinstance(data.get("status"), str) else "queued"
        return ExecutedRun(run_id=run_id, status=status, raw=data)

    async def poll_result(self, run_id: str) -> dict[str, Any]:
        url = f"{self.base_url}/deep-research/runs/{quote(run_id, safe='')}"

        async def fetch(context: RetryCallContext) -> dict[str, Any]:
            data = await request_json(
                self._client,
                "GET",
                url,
                provider=PROVIDER,
                operation="poll_result",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            status = data.get("status")
            if status == "completed":
                return data
            if status == "failed":
                error = data.get("error")
                message = (
                    error.get("message")
                    if isinstance(error, dict) and isinstance(error.get("message"), str)
                    else "OpenAI deep research run reported failure"
                )
                raise ProviderRunFailedError(message, provider=PROVIDER)
            raise RunPendingError(
                f"run {run_id} is {status or 'unknown'} (poll {context.attempt}/{context.max_attempts})",
                provider=PROVIDER,
            )

        return await poll_until_done(
            fetch,
            provider=PROVIDER,
            operation="poll_result",
            max_attempts=self.poll_max_attempts,
            initial_delay_ms=self.poll_initial_delay_ms,
            sleep=self._sleep,
        )

    async def run(self, request: ProviderRunRequest) -> ProviderRunOutput:
        if not request.session_id:
            raise ProviderPermanentError(
                "session_id is required to execute a run", provider=PROVIDER
            )
        executed = await self.execute_run(request.session_id, request.final_prompt)
        logger.info(f"OpenAI deep research run {executed.run_id} accepted ({executed.status})")
        payload = await self.poll_result(executed.run_id)
        return ProviderRunOutput(payload=payload, job_id=executed.run_id)
