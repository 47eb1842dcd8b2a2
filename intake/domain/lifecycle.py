from __future__ import annotations

from intake.domain.errors import DomainInvariantError
from intake.domain.models import SubmissionStatus

TERMINAL_STATES: frozenset[SubmissionStatus] = frozenset(
    {SubmissionStatus.COMPLETED, SubmissionStatus.FAILED}
)

# Forward-only transitions. processing -> processing is a lease re-acquisition
# after redelivery; failed -> queued is reserved for operator re-queue.
ALLOWED_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.QUEUED: frozenset({SubmissionStatus.PROCESSING, SubmissionStatus.FAILED}),
    SubmissionStatus.PROCESSING: frozenset(
        {SubmissionStatus.PROCESSING, SubmissionStatus.COMPLETED, SubmissionStatus.FAILED}
    ),
    SubmissionStatus.COMPLETED: frozenset(),
    SubmissionStatus.FAILED: frozenset(),
}

OPERATOR_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.FAILED: frozenset({SubmissionStatus.QUEUED}),
}


def is_terminal(status: str) -> bool:
    return SubmissionStatus(status) in TERMINAL_STATES


def can_transition(from_state: str, to_state: str, *, operator: bool = False) -> bool:
    source = SubmissionStatus(from_state)
    target = SubmissionStatus(to_state)
    if target in ALLOWED_TRANSITIONS[source]:
        return True
    return operator and target in OPERATOR_TRANSITIONS.get(source, frozenset())


def ensure_transition(from_state: str, to_state: str, *, operator: bool = False) -> None:
    if not can_transition(from_state, to_state, operator=operator):
        raise DomainInvariantError(f"invalid transition: {from_state} -> {to_state}")
