from __future__ import annotations

from typing import Any, Protocol

from research_assistant.models.research import (
    ProviderKind,
    ProviderStatePatch,
    RefinementAnswer,
    RefinementQuestion,
    ResearchSession,
    ResearchStatus,
    SessionPatch,
)
from research_assistant.research.errors import InvalidInputError, InvalidStateError, NotFoundError
from research_assistant.research.state_machine import assert_transition
from research_assistant.services import logger as log_service
from research_assistant.services.providers.openai_deep_research import (
    RefinementReply,
    RefinementStart,
)
from research_assistant.services.repository import ResearchRepository

MAX_TITLE_LENGTH = 200
REFINABLE_STATUSES = frozenset({ResearchStatus.AWAITING_REFINEMENTS, ResearchStatus.REFINING})


class RefinementClient(Protocol):
    async def start_session(self, topic: str, context: str | None = None) -> RefinementStart: ...

    async def submit_answer(self, session_id: str, answer: str, **context: Any) -> RefinementReply: ...


def _upsert_answer(
    answers: list[RefinementAnswer], index: int, answer: str
) -> list[RefinementAnswer]:
    merged = {a.index: a for a in answers}
    merged[index] = RefinementAnswer(index=index, answer=answer)
    return sorted(merged.values(), key=lambda a: a.index)


def _upsert_question(
    questions: list[RefinementQuestion], question: RefinementQuestion | None
) -> list[RefinementQuestion]:
    merged = {q.index: q for q in questions}
    if question is not None:
        merged[question.index] = question
    return sorted(merged.values(), key=lambda q: q.index)


class RefinementService:
    """Drives the OpenAI refinement Q&A that produces the final prompt."""

    def __init__(self, repository: ResearchRepository, client: RefinementClient):
        self.repository = repository
        self.client = client

    async def create_session(
        self,
        owner_uid: str,
        title: str,
        *,
        request_id: str | None = None,
    ) -> ResearchSession:
        clean_title = (title or "").strip()
        if not clean_title:
            raise InvalidInputError("Title is required")
        if len(clean_title) > MAX_TITLE_LENGTH:
            raise InvalidInputError(f"Title must be at most {MAX_TITLE_LENGTH} characters")

        session = await self.repository.create(owner_uid, clean_title)
        started = await self.client.start_session(clean_title)

        updated = await self.repository.update(
            session.id,
            SessionPatch(
                providers={
                    ProviderKind.OPENAI: ProviderStatePatch(
                        session_id=started.session_id, questions=started.questions
                    )
                }
            ),
            owner_uid=owner_uid,
        )
        log_service.log_run_step(
            session.id,
            "refinement_started",
            "success",
            provider=ProviderKind.OPENAI.value,
            request_id=request_id,
            data={"questions": len(started.questions)},
        )
        return updated

    async def submit_answer(
        self,
        session_id: str,
        owner_uid: str,
        answer: str,
        question_index: int,
        *,
        request_id: str | None = None,
    ) -> ResearchSession:
        clean_answer = (answer or "").strip()
        if not clean_answer:
            raise InvalidInputError("Answer is required")
        if question_index < 1:
            raise InvalidInputError("question_index must be a positive integer")

        session = await self.repository.get_by_id(session_id, owner_uid=owner_uid)
        if session is None:
            raise NotFoundError(session_id)
        if session.status not in REFINABLE_STATUSES:
            raise InvalidStateError(
                f"Refinement is closed for this research (status: {session.status.value})"
            )

        openai = session.provider(ProviderKind.OPENAI)
        if not openai.session_id:
            raise InvalidStateError("OpenAI refinement session has not been started")
        if openai.final_prompt:
            raise InvalidStateError("Refinement already produced a final prompt")

        reply = await self.client.submit_answer(
            openai.session_id,
            clean_answer,
            topic=session.title,
            question_index=question_index,
            answers=openai.answers,
        )

        openai_patch = ProviderStatePatch(
            answers=_upsert_answer(openai.answers, question_index, clean_answer),
            questions=_upsert_question(openai.questions, reply.next_question),
        )
        patch = SessionPatch(providers={ProviderKind.OPENAI: openai_patch})

        if reply.final_prompt:
            openai_patch.final_prompt = reply.final_prompt
            patch.providers[ProviderKind.GEMINI] = ProviderStatePatch(final_prompt=reply.final_prompt)
            assert_transition(session.status, ResearchStatus.READY_TO_RUN)
            patch.status = ResearchStatus.READY_TO_RUN
        elif session.status == ResearchStatus.AWAITING_REFINEMENTS:
            patch.status = ResearchStatus.REFINING

        updated = await self.repository.update(session_id, patch, owner_uid=owner_uid)
        log_service.log_run_step(
            session_id,
            "refinement_answer",
            "ready" if reply.final_prompt else "success",
            provider=ProviderKind.OPENAI.value,
            request_id=request_id,
            data={"question_index": question_index},
        )
        return updated
