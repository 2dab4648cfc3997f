"""
Validation status state machine.

Normal flow edges live in VALID_TRANSITIONS. Leaving a verdict
(validated / rejected / observed) back to pending_validation through an
explicit re-open uses REOPEN_TRANSITIONS and is never implied by recording
another decision.
"""
from core.validation.constants import (
    PENDING_VALIDATION, NOTIFIED, VALIDATED, OBSERVED, REJECTED,
)
from core.validation.errors import InvalidTransition

VALID_TRANSITIONS = {
    PENDING_VALIDATION: frozenset({NOTIFIED, VALIDATED, OBSERVED, REJECTED}),
    NOTIFIED: frozenset({NOTIFIED, VALIDATED, OBSERVED, REJECTED}),
    OBSERVED: frozenset({PENDING_VALIDATION, NOTIFIED, VALIDATED, REJECTED}),
    VALIDATED: frozenset(),
    REJECTED: frozenset(),
}

REOPEN_TRANSITIONS = {
    VALIDATED: frozenset({PENDING_VALIDATION}),
    REJECTED: frozenset({PENDING_VALIDATION}),
    OBSERVED: frozenset({PENDING_VALIDATION}),
}

TERMINAL_STATUSES = frozenset({VALIDATED, REJECTED})


def is_terminal(status):
    """True for statuses that end the normal flow."""
    return status in TERMINAL_STATUSES


def is_valid_transition(old_status, new_status, reopen=False):
    table = REOPEN_TRANSITIONS if reopen else VALID_TRANSITIONS
    return new_status in table.get(old_status, frozenset())


def check_transition(old_status, new_status, reopen=False, subject_id=None):
    """Raise InvalidTransition unless old_status -> new_status is a legal edge."""
    if not is_valid_transition(old_status, new_status, reopen=reopen):
        kind = 'reopen' if reopen else 'transition'
        raise InvalidTransition(
            f'Illegal {kind} {old_status} -> {new_status}',
            subject_id=subject_id,
        )
