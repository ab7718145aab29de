from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class ResearchStatus(str, Enum):
    AWAITING_REFINEMENTS = "awaiting_refinements"
    REFINING = "refining"
    READY_TO_RUN = "ready_to_run"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderRunStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class ProviderKind(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"


class EmailStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class ProviderSource(BaseModel):
    title: str = ""
    url: str = ""


class ProviderMetadata(BaseModel):
    tokens: Optional[int] = None
    model: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class ProviderResult(BaseModel):
    """Normalized output of one provider run."""
    raw: Any = None
    summary: str = ""
    insights: list[str] = []
    sources: Optional[list[ProviderSource]] = None
    meta: Optional[ProviderMetadata] = None


class RefinementQuestion(BaseModel):
    index: int
    text: str


class RefinementAnswer(BaseModel):
    index: int
    answer: str


class ProviderRunState(BaseModel):
    """Run bookkeeping for one provider within one session."""
    status: ProviderRunStatus = ProviderRunStatus.IDLE
    session_id: Optional[str] = None  # provider-side correlation handle
    job_id: Optional[str] = None
    final_prompt: Optional[str] = None
    questions: list[RefinementQuestion] = []
    answers: list[RefinementAnswer] = []
    result: Optional[ProviderResult] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @model_validator(mode="after")
    def _result_and_error_follow_status(self) -> "ProviderRunState":
        if (self.result is not None) != (self.status == ProviderRunStatus.SUCCESS):
            raise ValueError("result must be set exactly when status is 'success'")
        if (self.error is not None) != (self.status == ProviderRunStatus.FAILURE):
            raise ValueError("error must be set exactly when status is 'failure'")
        return self


class ReportState(BaseModel):
    pdf_path: Optional[str] = None
    emailed_to: Optional[str] = None
    email_status: Optional[EmailStatus] = None
    email_error: Optional[str] = None
    finalize_started_at: Optional[str] = None  # set while a finalize holds the report


def _empty_providers() -> dict[ProviderKind, ProviderRunState]:
    return {kind: ProviderRunState() for kind in ProviderKind}


class ResearchSession(BaseModel):
    id: str
    owner_uid: str
    title: str
    status: ResearchStatus = ResearchStatus.AWAITING_REFINEMENTS
    providers: dict[ProviderKind, ProviderRunState] = Field(default_factory=_empty_providers)
    report: ReportState = Field(default_factory=ReportState)
    created_at: datetime
    updated_at: datetime

    def provider(self, kind: ProviderKind | str) -> ProviderRunState:
        return self.providers.get(ProviderKind(kind)) or ProviderRunState()


# --- Partial updates ---
# Only fields explicitly assigned on a patch are applied; an explicit None clears the field.


class ProviderStatePatch(BaseModel):
    status: Optional[ProviderRunStatus] = None
    session_id: Optional[str] = None
    job_id: Optional[str] = None
    final_prompt: Optional[str] = None
    questions: Optional[list[RefinementQuestion]] = None
    answers: Optional[list[RefinementAnswer]] = None
    result: Optional[ProviderResult] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class ReportPatch(BaseModel):
    pdf_path: Optional[str] = None
    emailed_to: Optional[str] = None
    email_status: Optional[EmailStatus] = None
    email_error: Optional[str] = None
    finalize_started_at: Optional[str] = None


class SessionPatch(BaseModel):
    status: Optional[ResearchStatus] = None
    title: Optional[str] = None
    providers: dict[ProviderKind, ProviderStatePatch] = {}
    report: Optional[ReportPatch] = None
