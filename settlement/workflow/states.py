"""Session state machine as an explicit lookup table.

    not_started -> downloaded -> in_progress -> submitted -> completed
    any non-terminal state   -> auto_approved | expired   (deadline sweep)

Every allowed move is a ``(current_state, transition) -> next_state`` entry
in TRANSITIONS; anything not in the table is invalid. Each transition is
also restricted to the actor types allowed to perform it.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Tuple

from settlement.errors import PermissionDenied, StateError
from settlement.models import (
    TERMINAL_SESSION_STATUSES,
    ActorType,
    BatchStatus,
    SessionStatus,
)


class Transition(str, Enum):
    DOWNLOAD = "download"
    START = "start"
    SUBMIT = "submit"
    COMPLETE = "complete"
    AUTO_APPROVE = "auto_approve"
    EXPIRE = "expire"


S = SessionStatus

TRANSITIONS: Dict[Tuple[SessionStatus, Transition], SessionStatus] = {
    (S.NOT_STARTED, Transition.DOWNLOAD): S.DOWNLOADED,
    # Re-downloading keeps the session where it is
    (S.DOWNLOADED, Transition.DOWNLOAD): S.DOWNLOADED,
    (S.IN_PROGRESS, Transition.DOWNLOAD): S.IN_PROGRESS,
    (S.NOT_STARTED, Transition.START): S.IN_PROGRESS,
    (S.DOWNLOADED, Transition.START): S.IN_PROGRESS,
    (S.DOWNLOADED, Transition.SUBMIT): S.SUBMITTED,
    (S.IN_PROGRESS, Transition.SUBMIT): S.SUBMITTED,
    (S.SUBMITTED, Transition.COMPLETE): S.COMPLETED,
}

for _state in SessionStatus:
    if _state not in TERMINAL_SESSION_STATUSES:
        TRANSITIONS[(_state, Transition.AUTO_APPROVE)] = S.AUTO_APPROVED
        TRANSITIONS[(_state, Transition.EXPIRE)] = S.EXPIRED

ALLOWED_ACTORS: Dict[Transition, FrozenSet[ActorType]] = {
    Transition.DOWNLOAD: frozenset({ActorType.BUSINESS_USER}),
    Transition.START: frozenset({ActorType.BUSINESS_USER}),
    Transition.SUBMIT: frozenset({ActorType.BUSINESS_USER}),
    Transition.COMPLETE: frozenset({ActorType.ADMIN_USER}),
    Transition.AUTO_APPROVE: frozenset({ActorType.SYSTEM}),
    Transition.EXPIRE: frozenset({ActorType.SYSTEM}),
}

# States in which a business may record item decisions
DECIDABLE_STATES = frozenset({S.NOT_STARTED, S.DOWNLOADED, S.IN_PROGRESS})
# States that accept a bulk upload
UPLOADABLE_STATES = frozenset({S.DOWNLOADED, S.IN_PROGRESS})

# The batch status mirrors its session
BATCH_STATUS_FOR_SESSION: Dict[SessionStatus, BatchStatus] = {
    S.NOT_STARTED: BatchStatus.PENDING_VERIFICATION,
    S.DOWNLOADED: BatchStatus.PENDING_VERIFICATION,
    S.IN_PROGRESS: BatchStatus.IN_PROGRESS,
    S.SUBMITTED: BatchStatus.IN_PROGRESS,
    S.COMPLETED: BatchStatus.COMPLETED,
    S.AUTO_APPROVED: BatchStatus.AUTO_APPROVED,
    S.EXPIRED: BatchStatus.EXPIRED,
}


def sources_for(transition: Transition) -> List[str]:
    """States from which ``transition`` is valid."""
    return sorted(state.value for (state, t) in TRANSITIONS if t == transition)


def allowed_transitions(current: SessionStatus) -> List[Transition]:
    return [t for (state, t) in TRANSITIONS if state == current]


def next_state(current: SessionStatus, transition: Transition) -> SessionStatus:
    """Look up the target state or raise StateError naming the valid sources."""
    target = TRANSITIONS.get((current, transition))
    if target is None:
        raise StateError(
            f"Cannot {transition.value.replace('_', ' ')} a session in state {current.value}",
            current=current.value,
            allowed=sources_for(transition),
        )
    return target


def check_actor(transition: Transition, actor_type: ActorType) -> None:
    if actor_type not in ALLOWED_ACTORS[transition]:
        raise PermissionDenied(
            f"{actor_type.value} may not {transition.value.replace('_', ' ')} a session",
            details={
                "transition": transition.value,
                "allowed_actors": sorted(a.value for a in ALLOWED_ACTORS[transition]),
            },
        )
