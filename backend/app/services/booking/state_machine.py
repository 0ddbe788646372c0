"""Transition tables for reservations, change requests and cancel requests.

Each workflow object carries exactly one state value. All moves go through
advance(), which checks the table, bumps the version and records history, so
contradictory combinations ("searching" and "confirmed" at once) cannot exist.
"""

import logging
from datetime import datetime
from enum import Enum

from app.services.booking.errors import InvalidTransitionError, VersionConflictError
from app.services.booking.types import (
    CancelState,
    ChangeState,
    ReservationState,
    Transition,
    Workflow,
)

logger = logging.getLogger(__name__)

R = ReservationState
RESERVATION_TRANSITIONS: dict[ReservationState, frozenset[ReservationState]] = {
    R.DRAFT: frozenset({R.PRICING, R.ABANDONED}),
    R.PRICING: frozenset({R.PRICED, R.PRICING_FAILED}),
    R.PRICED: frozenset({R.REVIEWING, R.PRICING, R.DRAFT, R.ABANDONED}),
    R.PRICING_FAILED: frozenset({R.DRAFT, R.ABANDONED}),
    R.REVIEWING: frozenset({R.COMMITTING, R.PRICING, R.DRAFT, R.ABANDONED}),
    R.COMMITTING: frozenset({R.CONFIRMED, R.COMMIT_FAILED}),
    R.COMMIT_FAILED: frozenset({R.REVIEWING}),
    R.CONFIRMED: frozenset(),
    R.ABANDONED: frozenset(),
}

C = ChangeState
CHANGE_TRANSITIONS: dict[ChangeState, frozenset[ChangeState]] = {
    C.SELECTING_DATE: frozenset({C.SEARCHING, C.ABANDONED}),
    C.SEARCHING: frozenset({C.REVIEWING, C.SELECTING_DATE, C.ABANDONED}),
    C.REVIEWING: frozenset({C.CONFIRMING, C.SEARCHING, C.SELECTING_DATE, C.ABANDONED}),
    C.CONFIRMING: frozenset({C.SUCCEEDED, C.REVIEWING, C.SELECTING_DATE, C.ABANDONED}),
    C.SUCCEEDED: frozenset(),
    C.ABANDONED: frozenset(),
}

X = CancelState
CANCEL_TRANSITIONS: dict[CancelState, frozenset[CancelState]] = {
    X.QUOTE_REQUESTED: frozenset({X.QUOTE_READY, X.FAILED}),
    X.QUOTE_READY: frozenset({X.CONFIRMING, X.EXPIRED}),
    X.CONFIRMING: frozenset({X.CANCELLED, X.QUOTE_READY, X.FAILED}),
    X.CANCELLED: frozenset(),
    X.EXPIRED: frozenset(),
    X.FAILED: frozenset(),
}

# States that wait on an external round trip; commands are rejected meanwhile.
SUSPENDED_STATES: frozenset[Enum] = frozenset({
    R.PRICING,
    R.COMMITTING,
    C.SEARCHING,
    C.CONFIRMING,
    X.QUOTE_REQUESTED,
    X.CONFIRMING,
})

TERMINAL_STATES: frozenset[Enum] = frozenset(
    state
    for table in (RESERVATION_TRANSITIONS, CHANGE_TRANSITIONS, CANCEL_TRANSITIONS)
    for state, targets in table.items()
    if not targets
)


def is_suspended(workflow: Workflow) -> bool:
    return workflow.state in SUSPENDED_STATES


def is_terminal(workflow: Workflow) -> bool:
    return workflow.state in TERMINAL_STATES


def check_version(workflow: Workflow, expected_version: int | None) -> None:
    """Reject commands computed against an older version. None skips the check."""
    if expected_version is not None and expected_version != workflow.version:
        raise VersionConflictError(
            f"{type(workflow).__name__} {workflow.id} is at version {workflow.version}, "
            f"command was for version {expected_version}",
            expected=expected_version,
            actual=workflow.version,
        )


def ensure_idle(workflow: Workflow) -> None:
    if is_suspended(workflow):
        raise InvalidTransitionError(
            f"{type(workflow).__name__} {workflow.id} is busy ({workflow.state.value})",
            current_state=workflow.state.value,
        )


def advance(workflow: Workflow, target: Enum, table: dict, now: datetime) -> Transition:
    """Move a workflow to ``target`` or raise InvalidTransitionError."""
    current = workflow.state
    if target not in table.get(current, frozenset()):
        raise InvalidTransitionError(
            f"{type(workflow).__name__} {workflow.id} cannot move from "
            f"{current.value} to {target.value}",
            current_state=current.value,
            requested_state=target.value,
        )
    workflow.state = target
    workflow.version += 1
    workflow.updated_at = now
    step = Transition(from_state=current.value, to_state=target.value, at=now, version=workflow.version)
    workflow.history.append(step)
    logger.info(
        f"{type(workflow).__name__} {workflow.id}: {current.value} -> {target.value} (v{workflow.version})"
    )
    return step


def touch(workflow: Workflow, now: datetime) -> None:
    """Record an accepted data change that does not move the state."""
    workflow.version += 1
    workflow.updated_at = now
