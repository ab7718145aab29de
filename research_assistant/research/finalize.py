"""Report finalization: build the PDF, persist it, deliver it, record the outcome.

Delivery never fails ``finalize``: every transport outcome, including an
exception, is recorded on the report. Build and storage errors propagate.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from research_assistant.config import Settings
from research_assistant.models.research import (
    EmailStatus,
    ProviderKind,
    ReportPatch,
    ResearchSession,
    ResearchStatus,
    SessionPatch,
)
from research_assistant.research.errors import InvalidStateError, NotFoundError
from research_assistant.services import logger as log_service
from research_assistant.services.email.transport import (
    DeliveryMessage,
    DeliveryResult,
    DeliveryTransport,
    build_body,
    build_subject,
    truncate_error,
)
from research_assistant.services.logger import logger
from research_assistant.services.report.builder import ReportPayload, report_filename
from research_assistant.services.report.storage import ArtifactPersistResult
from research_assistant.services.repository import ResearchRepository, utcnow

MISSING_EMAIL_ERROR = "User email not available for delivery"
FINALIZABLE_STATUSES = frozenset({ResearchStatus.COMPLETED, ResearchStatus.FAILED})
TERMINAL_EMAIL_STATUSES = frozenset({EmailStatus.SENT, EmailStatus.FAILED})
FINALIZE_CLAIM_TTL = timedelta(minutes=10)


class ArtifactStore(Protocol):
    async def persist(
        self, session_id: str, data: bytes, filename: str | None = None
    ) -> ArtifactPersistResult: ...


ReportBuilder = Callable[[ReportPayload], bytes]


@dataclass(slots=True)
class FinalizeResult:
    artifact_bytes: bytes
    artifact_path: str
    storage_status: str
    filename: str
    delivery: DeliveryResult | None = None


def report_is_terminal(session: ResearchSession) -> bool:
    report = session.report
    return bool(report.pdf_path) and report.email_status in TERMINAL_EMAIL_STATUSES


def demo_email_for(owner_uid: str) -> str:
    return f"demo-user+{owner_uid}@example.com"


def finalize_in_progress(session: ResearchSession, now: datetime) -> bool:
    started = session.report.finalize_started_at
    if not started:
        return False
    try:
        started_at = datetime.fromisoformat(started)
    except ValueError:
        return False
    # A claim left behind by a crashed worker expires.
    return now - started_at < FINALIZE_CLAIM_TTL


def _check_finalizable(session: ResearchSession, now: datetime) -> None:
    if session.status not in FINALIZABLE_STATUSES:
        raise InvalidStateError(
            f"Research must be completed or failed to finalize (status: {session.status.value})"
        )
    if report_is_terminal(session):
        raise InvalidStateError("Research report has already been finalized")
    if finalize_in_progress(session, now):
        raise InvalidStateError("Research report is already being finalized")


class FinalizationPipeline:
    def __init__(
        self,
        repository: ResearchRepository,
        builder: ReportBuilder,
        store: ArtifactStore,
        transport: DeliveryTransport,
        settings: Settings,
    ):
        self.repository = repository
        self.builder = builder
        self.store = store
        self.transport = transport
        self.settings = settings

    def resolve_email(self, session: ResearchSession, user_email: str | None) -> str | None:
        for candidate in (user_email, session.report.emailed_to):
            if candidate and candidate.strip():
                return candidate.strip()
        if self.settings.demo_mode:
            return demo_email_for(session.owner_uid)
        return None

    async def finalize(
        self,
        session_id: str,
        owner_uid: str,
        user_email: str | None = None,
        *,
        request_id: str | None = None,
        send_email: bool = True,
    ) -> FinalizeResult:
        session = await self.repository.get_by_id(session_id, owner_uid=owner_uid)
        if session is None:
            raise NotFoundError(session_id)
        _check_finalizable(session, utcnow())
        session = await self._claim(session_id, owner_uid)

        try:
            return await self._finalize_claimed(session, user_email, request_id, send_email)
        finally:
            await self.repository.update(
                session_id,
                SessionPatch(report=ReportPatch(finalize_started_at=None)),
                owner_uid=owner_uid,
            )

    async def _claim(self, session_id: str, owner_uid: str) -> ResearchSession:
        """Mark the report as being finalized, atomically with the eligibility checks."""
        claimed_at = utcnow()
        return await self.repository.update(
            session_id,
            SessionPatch(report=ReportPatch(finalize_started_at=claimed_at.isoformat())),
            owner_uid=owner_uid,
            precondition=lambda current: _check_finalizable(current, claimed_at),
        )

    async def _finalize_claimed(
        self,
        session: ResearchSession,
        user_email: str | None,
        request_id: str | None,
        send_email: bool,
    ) -> FinalizeResult:
        session_id = session.id
        email = self.resolve_email(session, user_email)
        payload = ReportPayload(
            title=session.title,
            user_email=email,
            created_at=session.created_at,
            openai=session.provider(ProviderKind.OPENAI).result,
            gemini=session.provider(ProviderKind.GEMINI).result,
        )
        # Rendering is CPU bound.
        artifact = await asyncio.to_thread(self.builder, payload)
        filename = report_filename(session.title)

        persisted = await self.store.persist(session_id, artifact, filename)
        await self.repository.update(
            session_id,
            SessionPatch(report=ReportPatch(pdf_path=persisted.path)),
            owner_uid=session.owner_uid,
        )
        log_service.log_run_step(
            session_id,
            "report_persisted",
            persisted.status,
            request_id=request_id,
            data={"path": persisted.path, "size": len(artifact)},
        )

        delivery = None
        if send_email:
            delivery = await self._deliver(session, email, artifact, filename, request_id)

        return FinalizeResult(
            artifact_bytes=artifact,
            artifact_path=persisted.path,
            storage_status=persisted.status,
            filename=filename,
            delivery=delivery,
        )

    async def _deliver(
        self,
        session: ResearchSession,
        email: str | None,
        artifact: bytes,
        filename: str,
        request_id: str | None,
    ) -> DeliveryResult:
        if not email:
            await self._record_delivery(session, None, EmailStatus.FAILED, MISSING_EMAIL_ERROR)
            log_service.log_event(
                event_type="email_skipped",
                message=MISSING_EMAIL_ERROR,
                level=logging.WARNING,
                session_id=session.id,
                request_id=request_id,
            )
            return DeliveryResult(status="failed", provider="none", error_message=MISSING_EMAIL_ERROR)

        await self._record_delivery(session, email, EmailStatus.QUEUED, None)
        message = DeliveryMessage(
            to=email,
            subject=build_subject(session.title),
            body=build_body(self.settings.app_base_url, session.id, session.title),
            attachment=artifact,
            filename=filename,
        )

        try:
            result = await self.transport.send(message)
        except Exception as exc:
            logger.exception(
                f"Email transport raised (session_id={session.id}, request_id={request_id})"
            )
            result = DeliveryResult(
                status="failed",
                provider=getattr(self.transport, "name", "unknown"),
                error_message=str(exc) or exc.__class__.__name__,
            )

        if result.status == "sent":
            await self._record_delivery(session, email, EmailStatus.SENT, None)
        else:
            error = truncate_error(result.error_message) or "Email delivery failed"
            result.error_message = error
            await self._record_delivery(session, email, EmailStatus.FAILED, error)

        log_service.log_run_step(
            session.id,
            "email_delivery",
            result.status,
            request_id=request_id,
            data={"provider": result.provider, "message_id": result.message_id},
        )
        return result

    async def _record_delivery(
        self,
        session: ResearchSession,
        email: str | None,
        status: EmailStatus,
        error: str | None,
    ) -> None:
        await self.repository.update(
            session.id,
            SessionPatch(
                report=ReportPatch(emailed_to=email, email_status=status, email_error=error)
            ),
            owner_uid=session.owner_uid,
        )
