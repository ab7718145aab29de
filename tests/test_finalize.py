from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from research_assistant.config import Settings
from research_assistant.models.research import (
    EmailStatus,
    ProviderKind,
    ProviderResult,
    ProviderRunStatus,
    ProviderStatePatch,
    ReportPatch,
    ResearchStatus,
    SessionPatch,
)
from research_assistant.research.errors import InvalidStateError, NotFoundError
from research_assistant.research.finalize import (
    FINALIZE_CLAIM_TTL,
    MISSING_EMAIL_ERROR,
    FinalizationPipeline,
    FinalizeResult,
)
from research_assistant.services.email.transport import DeliveryResult, DemoTransport
from research_assistant.services.report.storage import ArtifactPersistResult, SupabaseArtifactStore
from research_assistant.services.repository import InMemoryResearchRepository, utcnow

OWNER = "user-1"


def fake_builder(payload) -> bytes:
    sections = [payload.openai.summary if payload.openai else "-", payload.gemini.summary if payload.gemini else "-"]
    return f"%PDF {payload.title} {'|'.join(sections)}".encode()


def make_pipeline(repo, transport=None, *, demo_mode=False, store=None):
    settings = Settings(_env_file=None, demo_mode=demo_mode, app_base_url="https://app.test")
    return FinalizationPipeline(
        repo,
        fake_builder,
        store or SupabaseArtifactStore(bucket=""),
        transport or DemoTransport(),
        settings,
    )


async def session_with_status(repo, status: ResearchStatus, *, openai_result=True):
    session = await repo.create(OWNER, "Solid-state batteries: 2025 outlook")
    await repo.update(session.id, SessionPatch(status=ResearchStatus.READY_TO_RUN), owner_uid=OWNER)
    if status == ResearchStatus.READY_TO_RUN:
        return session
    providers = {
        ProviderKind.OPENAI: ProviderStatePatch(status=ProviderRunStatus.RUNNING),
        ProviderKind.GEMINI: ProviderStatePatch(status=ProviderRunStatus.RUNNING),
    }
    await repo.update(
        session.id, SessionPatch(status=ResearchStatus.RUNNING, providers=providers), owner_uid=OWNER
    )
    if status == ResearchStatus.RUNNING:
        return session

    openai_patch = (
        ProviderStatePatch(status=ProviderRunStatus.SUCCESS, result=ProviderResult(summary="Costs fall"))
        if openai_result
        else ProviderStatePatch(status=ProviderRunStatus.FAILURE, error="boom")
    )
    await repo.update(
        session.id,
        SessionPatch(
            status=status,
            providers={
                ProviderKind.OPENAI: openai_patch,
                ProviderKind.GEMINI: ProviderStatePatch(status=ProviderRunStatus.FAILURE, error="quota"),
            },
        ),
        owner_uid=OWNER,
    )
    return session


@pytest.mark.asyncio
async def test_finalize_builds_persists_and_delivers():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    transport = DemoTransport()

    result = await make_pipeline(repo, transport).finalize(session.id, OWNER, "reader@example.com")

    assert result.artifact_bytes == b"%PDF Solid-state batteries: 2025 outlook Costs fall|-"
    assert result.filename == "solid-state-batteries-2025-outlook.pdf"
    assert result.storage_status == "skipped"
    assert result.artifact_path == f"buffer://{session.id}/solid-state-batteries-2025-outlook.pdf"
    assert result.delivery.status == "sent"

    sent = transport.sent[0]
    assert sent.to == "reader@example.com"
    assert sent.attachment == result.artifact_bytes
    assert f"https://app.test/research/{session.id}" in sent.body

    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.pdf_path == result.artifact_path
    assert stored.report.email_status == EmailStatus.SENT
    assert stored.report.emailed_to == "reader@example.com"
    assert stored.report.email_error is None


@pytest.mark.asyncio
async def test_missing_email_records_failure_and_still_returns_artifact():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.FAILED, openai_result=False)
    transport = AsyncMock()

    result = await make_pipeline(repo, transport).finalize(session.id, OWNER)

    assert result.artifact_bytes.startswith(b"%PDF")
    assert result.delivery.status == "failed"
    transport.send.assert_not_called()

    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.pdf_path is not None
    assert stored.report.email_status == EmailStatus.FAILED
    assert stored.report.email_error == MISSING_EMAIL_ERROR


@pytest.mark.asyncio
async def test_running_session_is_rejected_without_writes():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.RUNNING)
    before = await repo.get_by_id(session.id, owner_uid=OWNER)
    builder_calls = []

    pipeline = make_pipeline(repo)
    pipeline.builder = lambda payload: builder_calls.append(payload) or b""

    with pytest.raises(InvalidStateError):
        await pipeline.finalize(session.id, OWNER, "reader@example.com")

    after = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert after.updated_at == before.updated_at
    assert after.report.pdf_path is None
    assert builder_calls == []


@pytest.mark.asyncio
async def test_unknown_session_raises_not_found():
    with pytest.raises(NotFoundError):
        await make_pipeline(InMemoryResearchRepository()).finalize("missing", OWNER)


@pytest.mark.asyncio
async def test_second_finalize_after_terminal_delivery_is_rejected():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    pipeline = make_pipeline(repo)

    await pipeline.finalize(session.id, OWNER, "reader@example.com")
    with pytest.raises(InvalidStateError):
        await pipeline.finalize(session.id, OWNER, "reader@example.com")


@pytest.mark.asyncio
async def test_transport_exception_is_recorded_not_raised():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    transport = AsyncMock()
    transport.name = "sendgrid"
    transport.send.side_effect = RuntimeError("connection reset " + "x" * 600)

    result = await make_pipeline(repo, transport).finalize(session.id, OWNER, "reader@example.com")

    assert result.delivery.status == "failed"
    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.email_status == EmailStatus.FAILED
    assert stored.report.email_error.startswith("connection reset")
    assert len(stored.report.email_error) == 500


@pytest.mark.asyncio
async def test_transport_failure_result_is_recorded_verbatim():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    transport = AsyncMock()
    transport.send.return_value = DeliveryResult(
        status="failed", provider="sendgrid", error_message="SendGrid responded 403: forbidden"
    )

    await make_pipeline(repo, transport).finalize(session.id, OWNER, "reader@example.com")

    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.email_error == "SendGrid responded 403: forbidden"


@pytest.mark.asyncio
async def test_email_falls_back_to_stored_then_demo_address():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    await repo.update(
        session.id, SessionPatch(report=ReportPatch(emailed_to="stored@example.com")), owner_uid=OWNER
    )
    transport = DemoTransport()
    await make_pipeline(repo, transport).finalize(session.id, OWNER)
    assert transport.sent[0].to == "stored@example.com"

    other = await session_with_status(repo, ResearchStatus.COMPLETED)
    demo_transport = DemoTransport()
    await make_pipeline(repo, demo_transport, demo_mode=True).finalize(other.id, OWNER)
    assert demo_transport.sent[0].to == f"demo-user+{OWNER}@example.com"


@pytest.mark.asyncio
async def test_send_email_false_skips_delivery_bookkeeping():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    transport = DemoTransport()

    result = await make_pipeline(repo, transport).finalize(
        session.id, OWNER, "reader@example.com", send_email=False
    )

    assert result.delivery is None
    assert transport.sent == []
    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.pdf_path is not None
    assert stored.report.email_status is None


@pytest.mark.asyncio
async def test_uploaded_artifact_path_is_recorded():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    store = AsyncMock()
    store.persist.return_value = ArtifactPersistResult(
        status="uploaded", path=f"reports/{session.id}/file.pdf", bucket="reports"
    )

    result = await make_pipeline(repo, store=store).finalize(session.id, OWNER, "reader@example.com")

    assert result.storage_status == "uploaded"
    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.pdf_path == f"reports/{session.id}/file.pdf"


@pytest.mark.asyncio
async def test_untitled_slug_falls_back_to_report_pdf():
    repo = InMemoryResearchRepository()
    session = await repo.create(OWNER, "???")
    await repo.update(session.id, SessionPatch(status=ResearchStatus.FAILED), owner_uid=OWNER)

    result = await make_pipeline(repo).finalize(session.id, OWNER, "reader@example.com")
    assert result.filename == "report.pdf"


@pytest.mark.asyncio
async def test_concurrent_finalize_delivers_once():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    transport = DemoTransport()
    pipeline = make_pipeline(repo, transport)

    outcomes = await asyncio.gather(
        pipeline.finalize(session.id, OWNER, "reader@example.com"),
        pipeline.finalize(session.id, OWNER, "reader@example.com"),
        return_exceptions=True,
    )

    assert sorted(type(outcome).__name__ for outcome in outcomes) == [
        "FinalizeResult",
        "InvalidStateError",
    ]
    assert len(transport.sent) == 1
    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.email_status == EmailStatus.SENT
    assert stored.report.finalize_started_at is None


@pytest.mark.asyncio
async def test_finalize_in_progress_blocks_until_claim_expires():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    pipeline = make_pipeline(repo)

    await repo.update(
        session.id,
        SessionPatch(report=ReportPatch(finalize_started_at=utcnow().isoformat())),
        owner_uid=OWNER,
    )
    with pytest.raises(InvalidStateError, match="already being finalized"):
        await pipeline.finalize(session.id, OWNER, "reader@example.com")

    stale = utcnow() - FINALIZE_CLAIM_TTL - timedelta(seconds=1)
    await repo.update(
        session.id,
        SessionPatch(report=ReportPatch(finalize_started_at=stale.isoformat())),
        owner_uid=OWNER,
    )
    result = await pipeline.finalize(session.id, OWNER, "reader@example.com")

    assert isinstance(result, FinalizeResult)
    assert result.delivery.status == "sent"


@pytest.mark.asyncio
async def test_storage_error_propagates_and_leaves_report_unwritten():
    repo = InMemoryResearchRepository()
    session = await session_with_status(repo, ResearchStatus.COMPLETED)
    store = AsyncMock()
    store.persist.side_effect = RuntimeError("bucket unreachable")
    transport = DemoTransport()

    with pytest.raises(RuntimeError, match="bucket unreachable"):
        await make_pipeline(repo, transport, store=store).finalize(
            session.id, OWNER, "reader@example.com"
        )

    stored = await repo.get_by_id(session.id, owner_uid=OWNER)
    assert stored.report.pdf_path is None
    assert stored.report.email_status is None
    assert stored.report.finalize_started_at is None
    assert transport.sent == []

    retried = await make_pipeline(repo, transport).finalize(session.id, OWNER, "reader@example.com")
    assert retried.delivery.status == "sent"
