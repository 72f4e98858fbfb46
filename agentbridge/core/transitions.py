from collections.abc import Iterable
from enum import StrEnum

from agentbridge.core.errors import InvalidTransition
from agentbridge.core.models import LifecycleStatus, TurnState

_RESTARTABLE = frozenset({TurnState.IDLE, TurnState.FINISHED, TurnState.ERROR})

_ALLOWED_TURN_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    # A spawn failure moves straight to error without ever processing.
    TurnState.IDLE: frozenset({TurnState.PROCESSING, TurnState.ERROR}),
    TurnState.PROCESSING: frozenset(
        {TurnState.AWAITING_APPROVAL, TurnState.IDLE, TurnState.FINISHED, TurnState.ERROR}
    ),
    TurnState.AWAITING_APPROVAL: frozenset(
        {TurnState.PROCESSING, TurnState.IDLE, TurnState.FINISHED, TurnState.ERROR}
    ),
    TurnState.FINISHED: frozenset({TurnState.PROCESSING, TurnState.ERROR}),
    TurnState.ERROR: frozenset({TurnState.PROCESSING}),
}

_ALLOWED_LIFECYCLE_TRANSITIONS: dict[LifecycleStatus, frozenset[LifecycleStatus]] = {
    LifecycleStatus.STARTING: frozenset({LifecycleStatus.RUNNING, LifecycleStatus.STOPPED, LifecycleStatus.ERROR}),
    LifecycleStatus.RUNNING: frozenset({LifecycleStatus.STOPPED, LifecycleStatus.ERROR}),
    # A fresh message retries an errored chat.
    LifecycleStatus.ERROR: frozenset({LifecycleStatus.RUNNING, LifecycleStatus.STOPPED}),
    LifecycleStatus.STOPPED: frozenset(),
}


def can_start_turn(state: TurnState) -> bool:
    return state in _RESTARTABLE


def is_turn_active(state: TurnState) -> bool:
    return state in (TurnState.PROCESSING, TurnState.AWAITING_APPROVAL)


def allowed_next_turn_states(state: TurnState) -> frozenset[TurnState]:
    return _ALLOWED_TURN_TRANSITIONS.get(state, frozenset())


def allowed_next_lifecycle_statuses(status: LifecycleStatus) -> frozenset[LifecycleStatus]:
    return _ALLOWED_LIFECYCLE_TRANSITIONS.get(status, frozenset())


def validate_turn_transition(*, before: TurnState, after: TurnState) -> None:
    _validate_transition(before=before, after=after, allowed=allowed_next_turn_states(before), kind="TurnState")


def validate_lifecycle_transition(*, before: LifecycleStatus, after: LifecycleStatus) -> None:
    _validate_transition(
        before=before,
        after=after,
        allowed=allowed_next_lifecycle_statuses(before),
        kind="LifecycleStatus",
    )


def _validate_transition(*, before: StrEnum, after: StrEnum, allowed: Iterable[StrEnum], kind: str) -> None:
    allowed_set = set(allowed)
    if after in allowed_set:
        return
    if before == after:
        raise InvalidTransition(f"Illegal {kind} transition: {before.value} -> {after.value} (no-op not allowed)")
    rendered = ", ".join(s.value for s in sorted(allowed_set, key=lambda s: s.value))
    raise InvalidTransition(f"Illegal {kind} transition: {before.value} -> {after.value} (allowed: {rendered or '∅'})")
