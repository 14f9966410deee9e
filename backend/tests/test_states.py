import pytest

from escrowcourt.errors import StateConflictError
from escrowcourt.models.statuses import TicketStatus as S
from escrowcourt.services.complaint_states import (
    ACTIVE_STATUSES,
    DISBURSEMENT_BLOCKING_STATUSES,
    TRANSITIONS,
    assert_transition,
    can_transition,
)


class _Ticket:
    ticket_code = "TKT-TEST-0001"

    def __init__(self, status):
        self.status = status


@pytest.mark.parametrize(
    "current,target",
    [
        (S.OPEN, S.IN_REVIEW),
        (S.OPEN, S.CLOSED),
        (S.IN_REVIEW, S.NEED_MORE_INFO),
        (S.NEED_MORE_INFO, S.IN_REVIEW),
        (S.IN_REVIEW, S.RESOLVED),
        (S.RESOLVED, S.APPEAL_REVIEW),
        (S.APPEAL_REVIEW, S.APPEAL_OVERTURNED),
        (S.APPEAL_UPHELD, S.CLOSED),
    ],
)
def test_allowed(current, target):
    assert can_transition(current, target)
    assert assert_transition(_Ticket(current.value), target) == current


@pytest.mark.parametrize(
    "current,target",
    [
        (S.RESOLVED, S.IN_REVIEW),
        (S.IN_REVIEW, S.CLOSED),
        (S.APPEAL_REVIEW, S.RESOLVED),
        (S.APPEAL_OVERTURNED, S.APPEAL_REVIEW),
        (S.CLOSED, S.OPEN),
    ],
)
def test_refused_names_the_ticket(current, target):
    with pytest.raises(StateConflictError) as exc:
        assert_transition(_Ticket(current.value), target)
    assert "TKT-TEST-0001" in str(exc.value)


def test_closed_is_terminal():
    assert TRANSITIONS[S.CLOSED] == frozenset()


def test_every_status_has_a_row():
    assert set(TRANSITIONS) == set(S)


def test_appeal_review_blocks_release_but_is_not_active():
    assert S.APPEAL_REVIEW in DISBURSEMENT_BLOCKING_STATUSES
    assert S.APPEAL_REVIEW not in ACTIVE_STATUSES


def test_unknown_status_is_a_conflict():
    with pytest.raises(StateConflictError):
        can_transition("Lost", S.OPEN)
