from __future__ import annotations

from research_assistant.models.research import ProviderRunStatus, ResearchStatus
from research_assistant.research.errors import InvalidTransitionError

ALLOWED_TRANSITIONS: dict[ResearchStatus, frozenset[ResearchStatus]] = {
    ResearchStatus.AWAITING_REFINEMENTS: frozenset(
        {ResearchStatus.REFINING, ResearchStatus.READY_TO_RUN, ResearchStatus.FAILED}
    ),
    ResearchStatus.REFINING: frozenset({ResearchStatus.READY_TO_RUN, ResearchStatus.FAILED}),
    ResearchStatus.READY_TO_RUN: frozenset({ResearchStatus.RUNNING, ResearchStatus.FAILED}),
    ResearchStatus.RUNNING: frozenset({ResearchStatus.COMPLETED, ResearchStatus.FAILED}),
    ResearchStatus.COMPLETED: frozenset(),
    ResearchStatus.FAILED: frozenset(),
}

# Per-provider run lifecycle. A failed run may be re-armed by a manual retry.
RUN_TRANSITIONS: dict[ProviderRunStatus, frozenset[ProviderRunStatus]] = {
    ProviderRunStatus.IDLE: frozenset({ProviderRunStatus.QUEUED, ProviderRunStatus.RUNNING}),
    ProviderRunStatus.QUEUED: frozenset({ProviderRunStatus.RUNNING, ProviderRunStatus.FAILURE}),
    ProviderRunStatus.RUNNING: frozenset({ProviderRunStatus.SUCCESS, ProviderRunStatus.FAILURE}),
    ProviderRunStatus.SUCCESS: frozenset(),
    ProviderRunStatus.FAILURE: frozenset({ProviderRunStatus.RUNNING}),
}

TERMINAL_STATUSES = frozenset({ResearchStatus.COMPLETED, ResearchStatus.FAILED})
IN_FLIGHT_RUN_STATUSES = frozenset({ProviderRunStatus.QUEUED, ProviderRunStatus.RUNNING})


def can_transition(current: ResearchStatus | str, next_status: ResearchStatus | str) -> bool:
    try:
        current = ResearchStatus(current)
        next_status = ResearchStatus(next_status)
    except ValueError:
        return False
    return next_status in ALLOWED_TRANSITIONS[current]


def assert_transition(current: ResearchStatus | str, next_status: ResearchStatus | str) -> None:
    if not can_transition(current, next_status):
        raise InvalidTransitionError(_value(current), _value(next_status))


def can_transition_run(
    current: ProviderRunStatus | str, next_status: ProviderRunStatus | str
) -> bool:
    try:
        current = ProviderRunStatus(current)
        next_status = ProviderRunStatus(next_status)
    except ValueError:
        return False
    return next_status in RUN_TRANSITIONS[current]


def assert_run_transition(
    current: ProviderRunStatus | str, next_status: ProviderRunStatus | str
) -> None:
    if not can_transition_run(current, next_status):
        raise InvalidTransitionError(_value(current), _value(next_status), scope="provider run")


def _value(status: object) -> str:
    return str(getattr(status, "value", status))
