import pytest

from escrowcourt.extensions import db
from escrowcourt.models import ComplaintTimelineEvent, WalletTransaction
from escrowcourt.models.statuses import TimelineEventType


def test_newest_first_with_id_tiebreak(services, clock, ticket_for_timeline):
    tl = services.timeline
    tl.add_event(ticket_for_timeline, TimelineEventType.INTERNAL_NOTE_ADDED, description="same instant")
    db.session.commit()
    clock.advance(minutes=1)
    tl.add_event(ticket_for_timeline, TimelineEventType.STATUS_CHANGED, actor_role="moderator", meta={"to": "InReview"})
    db.session.commit()

    events = tl.get_timeline(ticket_for_timeline)

    assert events[0]["event_type"] == "StatusChanged"
    assert events[0]["meta"] == {"to": "InReview"}
    assert events[0]["actor_role"] == "moderator"
    # Created, AddedToQueue and the note share a timestamp; later ids come first
    assert [e["event_type"] for e in events[1:]] == ["InternalNoteAdded", "AddedToQueue", "Created"]


def test_unknown_event_type_is_rejected(services, ticket_for_timeline):
    with pytest.raises(ValueError):
        services.timeline.add_event(ticket_for_timeline, "Teleported")


def test_events_cannot_be_edited(ticket_for_timeline):
    row = ComplaintTimelineEvent.query.filter_by(ticket_id=ticket_for_timeline).first()
    row.description = "rewritten"
    with pytest.raises(RuntimeError):
        db.session.flush()
    db.session.rollback()


def test_events_cannot_be_deleted(ticket_for_timeline):
    row = ComplaintTimelineEvent.query.filter_by(ticket_id=ticket_for_timeline).first()
    db.session.delete(row)
    with pytest.raises(RuntimeError):
        db.session.flush()
    db.session.rollback()


def test_wallet_transactions_are_append_only(paid_line):
    txn = WalletTransaction.query.first()
    txn.amount = 1
    with pytest.raises(RuntimeError):
        db.session.flush()
    db.session.rollback()


@pytest.fixture
def ticket_for_timeline(buyer, paid_line, file_complaint):
    return file_complaint(buyer, paid_line).id
