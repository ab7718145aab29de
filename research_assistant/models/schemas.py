from __future__ import annotations

from pydantic import BaseModel, Field

from research_assistant.models.research import ResearchSession


# --- Requests ---


class CreateResearchRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class AnswerRequest(BaseModel):
    answer: str = Field(min_length=1)
    question_index: int = Field(ge=1)


class RunRequest(BaseModel):
    user_email: str | None = None


class FinalizeRequest(BaseModel):
    user_email: str | None = None
    send_email: bool = True


# --- Responses ---


class ResearchListResponse(BaseModel):
    items: list[ResearchSession]
    next_cursor: str | None = None


class RunResponse(BaseModel):
    already_running: bool
    research: ResearchSession


class DeliveryResponse(BaseModel):
    status: str
    provider: str
    message_id: str | None = None
    error_message: str | None = None


class FinalizeResponse(BaseModel):
    pdf_path: str
    storage_status: str
    filename: str
    size_bytes: int
    delivery: DeliveryResponse | None = None


class ErrorResponse(BaseModel):
    code: str
    message: str
    request_id: str | None = None
