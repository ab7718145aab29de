"""Provider run scheduling.

The scheduler arms a provider run with one conditional repository write, then
executes it in a background task under the retrier. Re-entrant requests that
arrive while a run is queued or running observe it instead of starting a
second one. After each run reaches a terminal state the session status is
settled, and a session that settles to ``completed`` is finalized once.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from research_assistant.models.research import (
    ProviderKind,
    ProviderResult,
    ProviderRunState,
    ProviderRunStatus,
    ProviderStatePatch,
    ResearchSession,
    ResearchStatus,
    SessionPatch,
)
from research_assistant.research.errors import (
    InvalidStateError,
    NotFoundError,
    ProviderError,
    ProviderTransientError,
)
from research_assistant.research.retry import RetryPolicy, Sleep, retry_with_policy
from research_assistant.research.state_machine import (
    IN_FLIGHT_RUN_STATUSES,
    assert_run_transition,
    assert_transition,
    can_transition,
)
from research_assistant.services import logger as log_service
from research_assistant.services.logger import logger
from research_assistant.services.providers.base import ProviderClient, ProviderRunRequest
from research_assistant.services.repository import ResearchRepository, utcnow

Normalizer = Callable[[Any], ProviderResult]

UNEXPECTED_FAILURE_MESSAGE = "Unexpected error while running provider"


class Finalizer(Protocol):
    async def finalize(
        self,
        session_id: str,
        owner_uid: str,
        user_email: str | None = None,
        *,
        request_id: str | None = None,
    ) -> Any: ...


@dataclass(slots=True)
class ScheduleResult:
    session: ResearchSession
    already_running: bool
    task: asyncio.Task | None = None


class _RunInFlight(Exception):
    pass


class _SettleSuperseded(Exception):
    pass


def _awaiting_run(state: ProviderRunState) -> bool:
    return state.status in IN_FLIGHT_RUN_STATUSES or (
        state.status == ProviderRunStatus.IDLE and bool(state.final_prompt)
    )


def settle_status(session: ResearchSession) -> ResearchStatus:
    """Status the session should hold given its provider run states.

    A provider that is idle but has its final prompt can still be scheduled
    on its own, so it keeps the session running.
    """
    if any(_awaiting_run(state) for state in session.providers.values()):
        return ResearchStatus.RUNNING
    statuses = [state.status for state in session.providers.values()]
    if any(status == ProviderRunStatus.SUCCESS for status in statuses):
        return ResearchStatus.COMPLETED
    return ResearchStatus.FAILED


def _retry_transient_only(error: BaseException, _context: Any) -> bool:
    return isinstance(error, ProviderTransientError)


class ProviderRunScheduler:
    def __init__(
        self,
        repository: ResearchRepository,
        clients: Mapping[ProviderKind, ProviderClient],
        normalizers: Mapping[ProviderKind, Normalizer],
        policies: Mapping[ProviderKind, RetryPolicy] | None = None,
        finalizer: Finalizer | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self.repository = repository
        self.clients = dict(clients)
        self.normalizers = dict(normalizers)
        self.policies = dict(policies or {})
        self.finalizer = finalizer
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    # --- public operations ---

    async def schedule_run(
        self,
        session_id: str,
        provider: ProviderKind | str,
        owner_uid: str,
        *,
        user_email: str | None = None,
        request_id: str | None = None,
    ) -> ScheduleResult:
        kind = ProviderKind(provider)
        session = await self._load(session_id, owner_uid)
        state = session.provider(kind)

        if state.status in IN_FLIGHT_RUN_STATUSES:
            self._log_in_flight(session_id, kind, state.status, request_id)
            return ScheduleResult(session=session, already_running=True)

        self._require_inputs(session, kind)
        if session.status != ResearchStatus.RUNNING:
            assert_transition(session.status, ResearchStatus.RUNNING)
        assert_run_transition(state.status, ProviderRunStatus.RUNNING)

        def guard(current: ResearchSession) -> None:
            current_state = current.provider(kind)
            if current_state.status in IN_FLIGHT_RUN_STATUSES:
                raise _RunInFlight()
            assert_run_transition(current_state.status, ProviderRunStatus.RUNNING)

        patch = self._arm_patch([kind], session)
        try:
            armed = await self.repository.update(
                session_id, patch, owner_uid=owner_uid, precondition=guard
            )
        except _RunInFlight:
            latest = await self._load(session_id, owner_uid)
            self._log_in_flight(session_id, kind, latest.provider(kind).status, request_id)
            return ScheduleResult(session=latest, already_running=True)

        task = self._spawn(
            self._execute(session_id, kind, owner_uid, user_email=user_email, request_id=request_id)
        )
        return ScheduleResult(session=armed, already_running=False, task=task)

    async def schedule_session(
        self,
        session_id: str,
        owner_uid: str,
        *,
        user_email: str | None = None,
        request_id: str | None = None,
    ) -> ScheduleResult:
        """Arm both providers in one write and run them concurrently."""
        session = await self._load(session_id, owner_uid)
        kinds = list(ProviderKind)

        if session.status == ResearchStatus.RUNNING or any(
            session.provider(kind).status in IN_FLIGHT_RUN_STATUSES for kind in kinds
        ):
            log_service.log_run_step(
                session_id, "schedule_session", "already_running", request_id=request_id
            )
            return ScheduleResult(session=session, already_running=True)

        for kind in kinds:
            self._require_inputs(session, kind)
            assert_run_transition(session.provider(kind).status, ProviderRunStatus.RUNNING)
        assert_transition(session.status, ResearchStatus.RUNNING)

        def guard(current: ResearchSession) -> None:
            if current.status == ResearchStatus.RUNNING or any(
                current.provider(kind).status in IN_FLIGHT_RUN_STATUSES for kind in kinds
            ):
                raise _RunInFlight()

        try:
            armed = await self.repository.update(
                session_id,
                self._arm_patch(kinds, session),
                owner_uid=owner_uid,
                precondition=guard,
            )
        except _RunInFlight:
            latest = await self._load(session_id, owner_uid)
            return ScheduleResult(session=latest, already_running=True)

        log_service.log_run_step(
            session_id,
            "schedule_session",
            "started",
            request_id=request_id,
            data={"providers": [kind.value for kind in kinds]},
        )
        task = self._spawn(
            self._run_all(session_id, kinds, owner_uid, user_email=user_email, request_id=request_id)
        )
        return ScheduleResult(session=armed, already_running=False, task=task)

    async def retry_provider(
        self,
        session_id: str,
        provider: ProviderKind | str,
        owner_uid: str,
        *,
        user_email: str | None = None,
        request_id: str | None = None,
    ) -> ScheduleResult:
        """Re-arm a failed provider run.

        The session keeps its status: a ``running`` session settles as usual
        once the retried run ends, a ``failed`` session stays ``failed`` and
        only the provider state is updated.
        """
        kind = ProviderKind(provider)
        session = await self._load(session_id, owner_uid)
        state = session.provider(kind)

        if state.status in IN_FLIGHT_RUN_STATUSES:
            self._log_in_flight(session_id, kind, state.status, request_id)
            return ScheduleResult(session=session, already_running=True)
        if session.status == ResearchStatus.COMPLETED:
            raise InvalidStateError("Research is already completed; provider retry is not allowed")
        if state.status != ProviderRunStatus.FAILURE:
            raise InvalidStateError(f"Provider {kind.value} has not failed; nothing to retry")
        self._require_inputs(session, kind)

        def guard(current: ResearchSession) -> None:
            current_state = current.provider(kind)
            if current_state.status in IN_FLIGHT_RUN_STATUSES:
                raise _RunInFlight()
            if current.status == ResearchStatus.COMPLETED:
                raise InvalidStateError("Research is already completed; provider retry is not allowed")
            if current_state.status != ProviderRunStatus.FAILURE:
                raise InvalidStateError(f"Provider {kind.value} has not failed; nothing to retry")

        patch = SessionPatch(providers={kind: self._running_patch()})
        try:
            armed = await self.repository.update(
                session_id, patch, owner_uid=owner_uid, precondition=guard
            )
        except _RunInFlight:
            latest = await self._load(session_id, owner_uid)
            return ScheduleResult(session=latest, already_running=True)

        log_service.log_run_step(
            session_id, "provider_retry", "started", provider=kind.value, request_id=request_id
        )
        task = self._spawn(
            self._execute(session_id, kind, owner_uid, user_email=user_email, request_id=request_id)
        )
        return ScheduleResult(session=armed, already_running=False, task=task)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- helpers ---

    async def _load(self, session_id: str, owner_uid: str) -> ResearchSession:
        session = await self.repository.get_by_id(session_id, owner_uid=owner_uid)
        if session is None:
            raise NotFoundError(session_id)
        return session

    def _require_inputs(self, session: ResearchSession, kind: ProviderKind) -> None:
        state = session.provider(kind)
        if not (state.final_prompt and state.final_prompt.strip()):
            raise InvalidStateError(f"Final prompt missing for {kind.value}; finish refinement first")
        if kind == ProviderKind.OPENAI and not state.session_id:
            raise InvalidStateError("OpenAI refinement session id is missing")
        if kind not in self.clients:
            raise InvalidStateError(f"No client configured for provider {kind.value}")

    @staticmethod
    def _running_patch() -> ProviderStatePatch:
        return ProviderStatePatch(
            status=ProviderRunStatus.RUNNING,
            started_at=utcnow().isoformat(),
            completed_at=None,
            result=None,
            error=None,
            duration_ms=None,
        )

    def _arm_patch(self, kinds: list[ProviderKind], session: ResearchSession) -> SessionPatch:
        patch = SessionPatch(providers={kind: self._running_patch() for kind in kinds})
        if session.status != ResearchStatus.RUNNING:
            patch.status = ResearchStatus.RUNNING
        return patch

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _log_in_flight(
        self,
        session_id: str,
        kind: ProviderKind,
        status: ProviderRunStatus,
        request_id: str | None,
    ) -> None:
        log_service.log_run_step(
            session_id,
            "schedule_run",
            "already_running",
            provider=kind.value,
            request_id=request_id,
            data={"provider_status": status.value},
        )

    def _build_request(self, session: ResearchSession, kind: ProviderKind) -> ProviderRunRequest:
        state = session.provider(kind)
        refinement = session.provider(ProviderKind.OPENAI)
        return ProviderRunRequest(
            final_prompt=state.final_prompt or "",
            session_id=state.session_id,
            topic=session.title,
            answers=[answer.model_dump() for answer in refinement.answers],
        )

    async def _run_all(
        self,
        session_id: str,
        kinds: list[ProviderKind],
        owner_uid: str,
        *,
        user_email: str | None,
        request_id: str | None,
    ) -> None:
        await asyncio.gather(
            *(
                self._execute(
                    session_id, kind, owner_uid, user_email=user_email, request_id=request_id
                )
                for kind in kinds
            )
        )

    async def _execute(
        self,
        session_id: str,
        kind: ProviderKind,
        owner_uid: str,
        *,
        user_email: str | None,
        request_id: str | None,
    ) -> None:
        try:
            await self._run_provider(session_id, kind, owner_uid, request_id=request_id)
            completed = await self._settle(session_id, owner_uid, request_id=request_id)
            if completed and self.finalizer is not None:
                await self._auto_finalize(session_id, owner_uid, user_email, request_id)
        except Exception:
            logger.exception(
                f"Provider run task crashed (session_id={session_id}, "
                f"provider={kind.value}, request_id={request_id})"
            )

    async def _run_provider(
        self,
        session_id: str,
        kind: ProviderKind,
        owner_uid: str,
        *,
        request_id: str | None,
    ) -> None:
        session = await self._load(session_id, owner_uid)
        request = self._build_request(session, kind)
        client = self.clients[kind]
        policy = self.policies.get(kind) or RetryPolicy()
        started = time.monotonic()

        log_service.log_run_step(
            session_id, "provider_run", "running", provider=kind.value, request_id=request_id
        )

        def on_retry(error: BaseException, context: Any) -> None:
            log_service.log_event(
                event_type="provider_retry",
                message=str(error),
                level=logging.WARNING,
                session_id=session_id,
                provider=kind.value,
                request_id=request_id,
                attempt=context.attempt,
                max_attempts=context.max_attempts,
                delay_ms=context.delay_ms,
            )

        try:
            output = await retry_with_policy(
                lambda _ctx: client.run(request),
                policy,
                on_retry=on_retry,
                should_retry=_retry_transient_only,
                sleep=self._sleep,
            )
            result = self.normalizers[kind](output.payload)
            terminal = ProviderStatePatch(
                status=ProviderRunStatus.SUCCESS,
                result=result,
                error=None,
                job_id=output.job_id,
            )
        except ProviderError as exc:
            terminal = ProviderStatePatch(
                status=ProviderRunStatus.FAILURE, result=None, error=exc.message
            )
        except Exception:
            logger.exception(
                f"Unexpected provider failure (session_id={session_id}, "
                f"provider={kind.value}, request_id={request_id})"
            )
            terminal = ProviderStatePatch(
                status=ProviderRunStatus.FAILURE, result=None, error=UNEXPECTED_FAILURE_MESSAGE
            )

        terminal.completed_at = utcnow().isoformat()
        terminal.duration_ms = int((time.monotonic() - started) * 1000)

        def still_running(current: ResearchSession) -> None:
            assert_run_transition(current.provider(kind).status, terminal.status)

        await self.repository.update(
            session_id,
            SessionPatch(providers={kind: terminal}),
            owner_uid=owner_uid,
            precondition=still_running,
        )
        log_service.log_run_step(
            session_id,
            "provider_run",
            "success" if terminal.status == ProviderRunStatus.SUCCESS else "failed",
            provider=kind.value,
            request_id=request_id,
            data={"duration_ms": terminal.duration_ms, "error": terminal.error},
        )

    async def _settle(
        self, session_id: str, owner_uid: str, *, request_id: str | None
    ) -> bool:
        """Recompute the session status. Returns True if this call completed it."""
        session = await self._load(session_id, owner_uid)
        target = settle_status(session)
        if target == session.status or not can_transition(session.status, target):
            return False

        def unchanged(current: ResearchSession) -> None:
            if current.status == target or settle_status(current) != target:
                raise _SettleSuperseded()

        try:
            await self.repository.update(
                session_id, SessionPatch(status=target), owner_uid=owner_uid, precondition=unchanged
            )
        except _SettleSuperseded:
            return False

        log_service.log_run_step(
            session_id,
            "settle",
            target.value,
            request_id=request_id,
            data={"from": session.status.value},
        )
        return target == ResearchStatus.COMPLETED

    async def _auto_finalize(
        self,
        session_id: str,
        owner_uid: str,
        user_email: str | None,
        request_id: str | None,
    ) -> None:
        try:
            await self.finalizer.finalize(session_id, owner_uid, user_email, request_id=request_id)
        except InvalidStateError as exc:
            # A client-initiated finalize got there first.
            log_service.log_run_step(
                session_id,
                "auto_finalize",
                "skipped",
                request_id=request_id,
                data={"reason": exc.message},
            )
        except Exception:
            logger.exception(
                f"Automatic finalization failed (session_id={session_id}, request_id={request_id})"
            )
