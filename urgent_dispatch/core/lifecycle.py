"""
Urgent request state machine.

    pending  -> assigned   (a candidate accepts)
    pending  -> cancelled  (client cancels)
    assigned -> completed  (client or assigned professional)
    assigned -> cancelled  (only when allow_cancel_after_assignment is on)

completed and cancelled are terminal.
"""
from __future__ import annotations

from urgent_dispatch.core.domain import RequestStatus
from urgent_dispatch.core.errors import InvalidTransitionError, TerminalStateError

_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.ASSIGNED, RequestStatus.CANCELLED}),
    RequestStatus.ASSIGNED: frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


def allowed_transitions(
    current: RequestStatus,
    *,
    allow_cancel_after_assignment: bool = False,
) -> frozenset[RequestStatus]:
    allowed = _TRANSITIONS[RequestStatus(current)]
    if RequestStatus(current) == RequestStatus.ASSIGNED and not allow_cancel_after_assignment:
        allowed = allowed - {RequestStatus.CANCELLED}
    return allowed


def ensure_transition(
    request_id: str,
    current: RequestStatus,
    target: RequestStatus,
    *,
    allow_cancel_after_assignment: bool = False,
) -> None:
    """Raise unless ``current -> target`` is a legal move."""
    current = RequestStatus(current)
    if current.is_terminal:
        raise TerminalStateError(f"Request {request_id} is already {current.value}")
    allowed = allowed_transitions(current, allow_cancel_after_assignment=allow_cancel_after_assignment)
    if RequestStatus(target) not in allowed:
        raise InvalidTransitionError(
            f"Request {request_id} cannot move from {current.value} to {RequestStatus(target).value}"
        )


def sources_for(target: RequestStatus, *, allow_cancel_after_assignment: bool = False) -> frozenset[RequestStatus]:
    """States from which ``target`` is reachable; used for conditional updates."""
    return frozenset(
        status for status in RequestStatus
        if RequestStatus(target) in allowed_transitions(
            status, allow_cancel_after_assignment=allow_cancel_after_assignment
        )
    )
