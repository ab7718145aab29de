from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from research_assistant.api.deps import get_container, get_owner_uid, get_request_id
from research_assistant.models.research import ProviderKind, ResearchSession
from research_assistant.models.schemas import (
    AnswerRequest,
    CreateResearchRequest,
    DeliveryResponse,
    ErrorResponse,
    FinalizeRequest,
    FinalizeResponse,
    ResearchListResponse,
    RunRequest,
    RunResponse,
)
from research_assistant.research.errors import NotFoundError
from research_assistant.research.scheduler import ScheduleResult
from research_assistant.services.container import Container

ERROR_RESPONSES = {
    status_code: {"model": ErrorResponse} for status_code in (400, 401, 404, 409, 500)
}

router = APIRouter(prefix="/api/research", tags=["research"], responses=ERROR_RESPONSES)


def _run_response(result: ScheduleResult) -> JSONResponse:
    body = RunResponse(already_running=result.already_running, research=result.session)
    return JSONResponse(
        status_code=200 if result.already_running else 202,
        content=body.model_dump(mode="json"),
    )


@router.post("", response_model=ResearchSession, status_code=201)
async def create_research(
    request: CreateResearchRequest,
    owner_uid: str = Depends(get_owner_uid),
    request_id: str = Depends(get_request_id),
    container: Container = Depends(get_container),
):
    """Create a session and start the OpenAI refinement Q&A."""
    return await container.refinement.create_session(
        owner_uid, request.title, request_id=request_id
    )


@router.get("", response_model=ResearchListResponse)
async def list_research(
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    owner_uid: str = Depends(get_owner_uid),
    container: Container = Depends(get_container),
):
    items, next_cursor = await container.repository.list_by_owner(
        owner_uid, limit=limit, cursor=cursor
    )
    return ResearchListResponse(items=items, next_cursor=next_cursor)


@router.get("/{research_id}", response_model=ResearchSession)
async def get_research(
    research_id: str,
    owner_uid: str = Depends(get_owner_uid),
    container: Container = Depends(get_container),
):
    session = await container.repository.get_by_id(research_id, owner_uid=owner_uid)
    if session is None:
        raise NotFoundError(research_id)
    return session


@router.post("/{research_id}/answers", response_model=ResearchSession)
async def submit_answer(
    research_id: str,
    request: AnswerRequest,
    owner_uid: str = Depends(get_owner_uid),
    request_id: str = Depends(get_request_id),
    container: Container = Depends(get_container),
):
    return await container.refinement.submit_answer(
        research_id,
        owner_uid,
        request.answer,
        request.question_index,
        request_id=request_id,
    )


@router.post("/{research_id}/run", response_model=RunResponse)
async def run_research(
    research_id: str,
    request: RunRequest | None = None,
    owner_uid: str = Depends(get_owner_uid),
    request_id: str = Depends(get_request_id),
    container: Container = Depends(get_container),
):
    """Start both providers. 202 when a run starts, 200 when one is already in flight."""
    result = await container.scheduler.schedule_session(
        research_id,
        owner_uid,
        user_email=request.user_email if request else None,
        request_id=request_id,
    )
    return _run_response(result)


@router.post("/{research_id}/providers/{provider}/retry", response_model=RunResponse)
async def retry_provider(
    research_id: str,
    provider: str,
    request: RunRequest | None = None,
    owner_uid: str = Depends(get_owner_uid),
    request_id: str = Depends(get_request_id),
    container: Container = Depends(get_container),
):
    try:
        kind = ProviderKind(provider)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}") from None

    result = await container.scheduler.retry_provider(
        research_id,
        kind,
        owner_uid,
        user_email=request.user_email if request else None,
        request_id=request_id,
    )
    return _run_response(result)


@router.post("/{research_id}/finalize", response_model=FinalizeResponse)
async def finalize_research(
    research_id: str,
    request: FinalizeRequest | None = None,
    owner_uid: str = Depends(get_owner_uid),
    request_id: str = Depends(get_request_id),
    container: Container = Depends(get_container),
):
    request = request or FinalizeRequest()
    result = await container.finalizer.finalize(
        research_id,
        owner_uid,
        request.user_email,
        request_id=request_id,
        send_email=request.send_email,
    )
    delivery = None
    if result.delivery is not None:
        delivery = DeliveryResponse(
            status=result.delivery.status,
            provider=result.delivery.provider,
            message_id=result.delivery.message_id,
            error_message=result.delivery.error_message,
        )
    return FinalizeResponse(
        pdf_path=result.artifact_path,
        storage_status=result.storage_status,
        filename=result.filename,
        size_bytes=len(result.artifact_bytes),
        delivery=delivery,
    )
