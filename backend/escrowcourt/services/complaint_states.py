from __future__ import annotations

from escrowcourt.errors import StateConflictError
from escrowcourt.models.statuses import TicketStatus

S = TicketStatus

TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    S.OPEN: frozenset({S.IN_REVIEW, S.NEED_MORE_INFO, S.RESOLVED, S.CLOSED}),
    # InReview -> InReview is a reassignment
    S.IN_REVIEW: frozenset({S.IN_REVIEW, S.NEED_MORE_INFO, S.RESOLVED}),
    S.NEED_MORE_INFO: frozenset({S.IN_REVIEW, S.RESOLVED}),
    S.RESOLVED: frozenset({S.APPEAL_REVIEW, S.CLOSED}),
    S.APPEAL_REVIEW: frozenset({S.APPEAL_UPHELD, S.APPEAL_OVERTURNED}),
    S.APPEAL_UPHELD: frozenset({S.CLOSED}),
    S.APPEAL_OVERTURNED: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
}

# Count toward the one-active-ticket-per-line rule
ACTIVE_STATUSES = frozenset({S.OPEN, S.IN_REVIEW, S.NEED_MORE_INFO})

# Hold back escrow release while one of these is on the line
DISBURSEMENT_BLOCKING_STATUSES = ACTIVE_STATUSES | {S.APPEAL_REVIEW}

# Decided, waiting for the appeal window to run out
CLOSABLE_STATUSES = frozenset({S.RESOLVED, S.APPEAL_UPHELD, S.APPEAL_OVERTURNED})


def as_status(value) -> TicketStatus:
    try:
        return TicketStatus(value)
    except ValueError:
        raise StateConflictError(f"Unknown ticket status {value!r}") from None


def can_transition(current, target) -> bool:
    return as_status(target) in TRANSITIONS.get(as_status(current), frozenset())


def assert_transition(ticket, target: TicketStatus) -> TicketStatus:
    """Single gate for every ticket status change."""
    current = as_status(ticket.status)
    if not can_transition(current, target):
        raise StateConflictError(
            f"Ticket {ticket.ticket_code} cannot move from {current.value} to {as_status(target).value}",
            ticket_code=ticket.ticket_code,
            status=current.value,
        )
    return current


def is_active(status) -> bool:
    return as_status(status) in ACTIVE_STATUSES


def values(statuses) -> list[str]:
    return sorted(s.value for s in statuses)
