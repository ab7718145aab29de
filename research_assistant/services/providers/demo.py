"""Deterministic stand-ins for the research providers, used in demo mode.

The demo clients emit payloads in each provider's wire shape so results flow
through the same normalizers as live runs.
"""
from __future__ import annotations

import asyncio
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Callable

from research_assistant.models.research import RefinementQuestion
from research_assistant.services.providers.base import ProviderRunOutput, ProviderRunRequest
from research_assistant.services.providers.openai_deep_research import (
    RefinementReply,
    RefinementStart,
)

QUESTION_TEMPLATES: list[Callable[[str], str]] = [
    lambda topic: f'Who is the primary audience or stakeholder for "{topic}"?',
    lambda topic: f'What specific goals or outcomes should the research on "{topic}" achieve?',
    lambda _topic: (
        "List any constraints, success metrics, or critical timelines the research should respect."
    ),
]

DEFAULT_AUDIENCE = "executive stakeholders"
DEFAULT_OUTCOME = "a clear action roadmap"
DEFAULT_CONSTRAINTS = "budget, timing, and regulatory considerations"

DEMO_SOURCES = {
    "openai": [
        {"title": "Global Industry Outlook (Demo)", "url": "https://example.com/demo-industry-outlook"},
        {"title": "Analyst Interview Transcript (Demo)", "url": "https://example.com/demo-analyst-interview"},
    ],
    "gemini": [
        {"title": "Emerging Trends Brief (Demo)", "url": "https://example.com/demo-trends"},
        {"title": "Customer Sentiment Pulse (Demo)", "url": "https://example.com/demo-sentiment"},
    ],
}


def _slug_for_id(topic: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", topic.lower()).strip("-")[:32]


def build_questions(topic: str) -> list[RefinementQuestion]:
    return [
        RefinementQuestion(index=index, text=template(topic))
        for index, template in enumerate(QUESTION_TEMPLATES, start=1)
    ]


def answer_map(answers: list[Any]) -> dict[int, str]:
    """Index -> trimmed answer, skipping blanks. Accepts models or plain dicts."""
    mapped: dict[int, str] = {}
    for entry in answers:
        if isinstance(entry, dict):
            index, answer = entry.get("index"), entry.get("answer")
        else:
            index, answer = getattr(entry, "index", None), getattr(entry, "answer", None)
        if isinstance(index, int) and isinstance(answer, str) and answer.strip():
            mapped[index] = answer.strip()
    return mapped


def build_final_prompt(topic: str, answers: dict[int, str]) -> str:
    return "\n".join(
        [
            "You are a senior research analyst preparing a comparative intelligence brief.",
            f"Topic: {topic}",
            f"Primary audience: {answers.get(1, DEFAULT_AUDIENCE)}",
            f"Desired outcomes: {answers.get(2, DEFAULT_OUTCOME)}",
            f"Constraints & success metrics: {answers.get(3, DEFAULT_CONSTRAINTS)}",
            "",
            "Deliver a structured report with the following sections: Executive Summary, "
            "Key Findings, Risks & Gaps, Recommendations, Suggested Next Steps.",
            "Surface at least three credible sources, contrasting perspectives, and cite them inline.",
        ]
    )


class DemoRefinementClient:
    """Offline replacement for the OpenAI refinement endpoints."""

    name = "openai"

    async def start_session(self, topic: str, context: str | None = None) -> RefinementStart:
        questions = build_questions(topic)
        suffix = secrets.token_hex(3)
        return RefinementStart(
            session_id=f"demo-session-{_slug_for_id(topic) or 'demo'}-{suffix}",
            questions=questions[:1],
            raw={"demo": True, "topic": topic, "total_questions": len(questions)},
        )

    async def submit_answer(
        self,
        session_id: str,
        answer: str,
        *,
        topic: str = "",
        question_index: int = 1,
        answers: list[Any] | None = None,
    ) -> RefinementReply:
        known = answer_map(answers or [])
        known[question_index] = answer.strip()

        questions = build_questions(topic)
        next_question = next((q for q in questions if q.index == question_index + 1), None)
        final_prompt = (
            build_final_prompt(topic, known) if question_index >= len(questions) else None
        )
        return RefinementReply(
            next_question=next_question,
            final_prompt=final_prompt,
            raw={"demo": True, "topic": topic, "question_index": question_index, "answers": known},
        )


class DemoProviderClient:
    """Returns a canned, topic-aware payload after an optional simulated latency."""

    def __init__(self, name: str, *, latency_seconds: float = 0.0):
        if name not in DEMO_SOURCES:
            raise ValueError(f"Unknown demo provider: {name}")
        self.name = name
        self.latency_seconds = latency_seconds

    async def run(self, request: ProviderRunRequest) -> ProviderRunOutput:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        answers = answer_map(request.answers)
        audience = answers.get(1, DEFAULT_AUDIENCE)
        outcome = answers.get(2, DEFAULT_OUTCOME)
        constraints = answers.get(3, DEFAULT_CONSTRAINTS)
        topic = request.topic or "the requested topic"

        summary = (
            f'Structured research guidance for "{topic}" tailored to {audience}, '
            f"emphasizing {outcome} within {constraints}."
        )
        insights = [
            f"Audience emphasis: {audience}",
            f"Desired outcomes: {outcome}",
            f"Key constraints: {constraints}",
        ]
        job_id = f"demo-{self.name}-{secrets.token_hex(4)}"

        if self.name == "openai":
            now = datetime.now(timezone.utc).isoformat()
            insights += [
                "Synthesizes analyst-style talking points and risks.",
                "Highlights contrasting viewpoints from industry and academic sources.",
            ]
            payload = {
                "id": job_id,
                "status": "completed",
                "output": {
                    "summary": summary,
                    "insights": insights,
                    "sources": DEMO_SOURCES["openai"],
                },
                "usage": {
                    "total_tokens": 1280,
                    "model": "demo-openai-analyst",
                    "started_at": now,
                    "completed_at": now,
                },
            }
        else:
            insights += [
                "Captures forward-looking opportunities and potential blockers.",
                "Pairs qualitative sentiment with quantitative leading indicators.",
            ]
            payload = {
                "candidates": [
                    {"content": {"parts": [{"text": "\n".join([summary, *insights])}]}}
                ],
                "usageMetadata": {"totalTokenCount": 1120},
                "modelVersion": "demo-gemini-visionary",
            }

        return ProviderRunOutput(payload=payload, job_id=job_id)
