import json
from datetime import timedelta

import pytest

from escrowcourt.errors import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
    WindowExpiredError,
)
from escrowcourt.extensions import db
from escrowcourt.models import AuditLog, ComplaintTicket, Order, OrderLine
from escrowcourt.services.complaints import generate_ticket_code


def _events(services, ticket_id):
    return [e["event_type"] for e in services.complaints.get_timeline(ticket_id)]


def _ticket(ticket_id):
    return db.session.get(ComplaintTicket, ticket_id)


@pytest.fixture
def ticket(buyer, paid_line, file_complaint):
    return file_complaint(buyer, paid_line)


@pytest.fixture
def reviewed(services, ticket, moderator):
    services.queue.pick_next_from_queue(moderator.id)
    return _ticket(ticket.id)


class TestCreateComplaint:
    def test_opens_ticket_and_freezes_the_line(self, services, buyer, seller, paid_line, file_complaint, clock):
        t = file_complaint(
            buyer,
            paid_line,
            category="invalid_code",
            evidence=[{"type": "Screenshot", "url": "https://files.example/1.png"}],
        )

        assert t.status == "Open"
        assert t.ticket_code.startswith("TKT-")
        assert t.seller_id == seller.id
        assert t.order_value == 1_000_000
        assert t.buyer_trust_level == 80
        assert t.seller_trust_level == 40
        assert t.seller_response_deadline == clock.now + timedelta(hours=48)
        assert t.snapshot()["hold_amount"] == 1_000_000
        line = db.session.get(OrderLine, paid_line.id)
        assert line.item_status == "Disputed"
        assert db.session.get(Order, line.order_id).status == "Disputed"

        entry = services.queue.entry_for_ticket(t.id)
        assert entry.status == "InQueue"
        assert entry.is_high_value is True
        assert set(_events(services, t.id)) == {"Created", "EvidenceAdded", "AddedToQueue"}

    def test_requires_title_and_content(self, services, buyer, paid_line):
        with pytest.raises(ValidationError):
            services.complaints.create_complaint(buyer.id, paid_line.id, "  ", "content")

    def test_only_the_buyer_can_file(self, services, make_user, paid_line):
        stranger = make_user("buyer")
        with pytest.raises(PermissionDeniedError):
            services.complaints.create_complaint(stranger.id, paid_line.id, "t", "c")

    def test_unknown_line(self, services, buyer):
        with pytest.raises(NotFoundError):
            services.complaints.create_complaint(buyer.id, 404, "t", "c")

    def test_window_expired(self, services, clock, buyer, paid_line):
        clock.advance(hours=72, seconds=1)
        with pytest.raises(WindowExpiredError):
            services.complaints.create_complaint(buyer.id, paid_line.id, "t", "c")

    def test_single_active_ticket_per_line(self, buyer, paid_line, file_complaint, ticket):
        with pytest.raises(StateConflictError) as exc:
            file_complaint(buyer, paid_line)
        assert ticket.ticket_code in str(exc.value)
        assert ComplaintTicket.query.count() == 1

    def test_released_line_cannot_be_disputed(self, services, clock, buyer, paid_line, file_complaint):
        clock.advance(hours=72)
        services.processor.disburse(paid_line.id)
        with pytest.raises(StateConflictError):
            file_complaint(buyer, paid_line)

    def test_bad_evidence_type_rolls_everything_back(self, buyer, paid_line, file_complaint):
        with pytest.raises(ValidationError):
            file_complaint(buyer, paid_line, evidence=[{"type": "Hologram", "url": "x"}])
        assert ComplaintTicket.query.count() == 0
        assert db.session.get(OrderLine, paid_line.id).item_status == "Delivered"

    def test_auto_assign_picks_least_busy_moderator(self, app, services, buyer, seller, make_user, make_paid_order, file_complaint):
        busy = make_user("moderator")
        idle = make_user("moderator")
        services.complaints.auto_assign = True
        try:
            first = file_complaint(buyer, make_paid_order(buyer, seller).lines[0])
            second = file_complaint(buyer, make_paid_order(buyer, seller).lines[0])
        finally:
            services.complaints.auto_assign = False

        assert _ticket(first.id).assigned_moderator_id == busy.id
        assert _ticket(second.id).assigned_moderator_id == idle.id
        assert _ticket(second.id).status == "InReview"


class TestCanFileComplaint:
    def test_reports_hours_remaining(self, services, clock, buyer, paid_line):
        clock.advance(hours=10)
        res = services.complaints.can_file_complaint(paid_line.id, buyer.id)
        assert res == {"can_file": True, "hours_remaining": 62.0}

    def test_window_is_inclusive_at_the_deadline(self, services, clock, buyer, paid_line, file_complaint):
        clock.advance(hours=72)
        res = services.complaints.can_file_complaint(paid_line.id, buyer.id)
        assert res == {"can_file": True, "hours_remaining": 0.0}
        # the dry run and the real filing agree on the boundary
        assert file_complaint(buyer, paid_line).status == "Open"

    def test_closed_one_second_past_the_deadline(self, services, clock, buyer, paid_line, file_complaint):
        clock.advance(hours=72, seconds=1)
        assert services.complaints.can_file_complaint(paid_line.id, buyer.id)["can_file"] is False
        with pytest.raises(WindowExpiredError):
            file_complaint(buyer, paid_line)

    def test_closed_after_window(self, services, clock, paid_line):
        clock.advance(hours=73)
        res = services.complaints.can_file_complaint(paid_line.id)
        assert res["can_file"] is False
        assert res["hours_remaining"] == 0

    def test_blocked_by_active_ticket(self, services, paid_line, ticket):
        res = services.complaints.can_file_complaint(paid_line.id)
        assert res["can_file"] is False
        assert ticket.ticket_code in res["reason"]


class TestModeration:
    def test_request_more_info_then_buyer_answers(self, services, buyer, moderator, reviewed):
        services.complaints.request_more_info(reviewed.id, moderator.id, "buyer", ["When did you redeem it?"])
        assert _ticket(reviewed.id).status == "NeedMoreInfo"

        services.complaints.add_evidence(
            reviewed.id, buyer.id, type="Image", url="https://files.example/receipt.jpg", description="receipt"
        )

        assert _ticket(reviewed.id).status == "InReview"
        events = _events(services, reviewed.id)
        assert events[0] == "InfoProvided"
        assert "InfoRequested" in events

    def test_request_more_info_needs_questions(self, services, moderator, reviewed):
        with pytest.raises(ValidationError):
            services.complaints.request_more_info(reviewed.id, moderator.id, "seller", [" "])

    def test_seller_can_add_evidence(self, services, seller, ticket):
        ev = services.complaints.add_evidence(ticket.id, seller.id, type="Document", url="https://files.example/log.pdf")
        assert ev.party == "seller"

    def test_stranger_cannot_add_evidence(self, services, make_user, ticket):
        with pytest.raises(PermissionDeniedError):
            services.complaints.add_evidence(ticket.id, make_user("buyer").id, type="Image", url="u")

    def test_internal_note_starts_work_and_stays_internal(self, services, buyer, moderator, ticket):
        services.complaints.add_internal_note(ticket.id, moderator.id, "Seller has three similar reports")

        entry = services.queue.entry_for_ticket(ticket.id)
        assert entry.status == "InProgress"
        assert entry.assigned_moderator_id == moderator.id

        staff_view = services.complaints.get_complaint_by_id(ticket.id, moderator.id, "moderator")
        buyer_view = services.complaints.get_complaint_by_id(ticket.id, buyer.id, "buyer")
        assert staff_view["internal_notes"][0]["content"] == "Seller has three similar reports"
        assert "internal_notes" not in buyer_view
        assert "calculated_priority" not in buyer_view

    def test_non_staff_cannot_moderate(self, services, seller, ticket):
        with pytest.raises(PermissionDeniedError):
            services.complaints.add_internal_note(ticket.id, seller.id, "hi")

    def test_manual_assignment(self, services, make_user, moderator, ticket):
        admin = make_user("admin")
        t = services.complaints.assign_to_moderator(ticket.id, moderator.id, actor_id=admin.id, actor_role="admin")
        assert t.status == "InReview"
        assert t.assigned_moderator_id == moderator.id
        assert services.queue.entry_for_ticket(ticket.id).status == "Assigned"
        assert services.stats.get_stats(moderator.id)["tickets_assigned"] == 1


class TestDecisions:
    def test_full_refund_decision(self, services, buyer, moderator, reviewed, wallet_of):
        t = services.complaints.make_decision(reviewed.id, moderator.id, "FullRefund", "Code was reused")

        assert t.status == "Resolved"
        assert t.resolution_type == "FullRefund"
        assert t.refund_amount == 1_000_000
        assert t.appeal_deadline is not None
        w = wallet_of(buyer)
        assert (w.balance, w.hold_balance) == (1_000_000, 0)
        assert db.session.get(OrderLine, t.order_line_id).hold_status == "Refunded"
        assert services.queue.entry_for_ticket(t.id).status == "Completed"
        events = _events(services, t.id)
        assert "DecisionMade" in events and "RefundProcessed" in events
        stats = services.stats.get_stats(moderator.id)
        assert stats["tickets_resolved"] == 1
        assert stats["full_refunds"] == 1
        assert stats["on_time_resolutions"] == 1

    def test_partial_refund_bounds(self, services, moderator, reviewed):
        for amount in (None, 0, 1_000_001):
            with pytest.raises(ValidationError):
                services.complaints.make_decision(reviewed.id, moderator.id, "PartialRefund", refund_amount=amount)
        assert _ticket(reviewed.id).status == "InReview"

    def test_partial_refund_decision(self, services, buyer, moderator, reviewed, wallet_of):
        services.complaints.make_decision(reviewed.id, moderator.id, "PartialRefund", "half", refund_amount=500_000)
        w = wallet_of(buyer)
        assert (w.balance, w.hold_balance) == (500_000, 500_000)
        assert services.stats.get_stats(moderator.id)["partial_refunds"] == 1

    def test_reject_returns_line_to_release_path(self, services, clock, seller, moderator, reviewed, wallet_of):
        t = services.complaints.make_decision(reviewed.id, moderator.id, "Reject", "Code works")

        line = db.session.get(OrderLine, t.order_line_id)
        assert line.item_status == "Delivered"
        assert db.session.get(Order, t.order_id).status == "Paid"

        clock.advance(hours=72)
        assert services.processor.disburse(line.id)["success"] is True
        assert wallet_of(seller).balance == 950_000

    def test_none_is_not_a_decision(self, services, moderator, reviewed):
        with pytest.raises(ValidationError):
            services.complaints.make_decision(reviewed.id, moderator.id, "None")

    def test_decided_ticket_cannot_be_decided_again(self, services, moderator, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        with pytest.raises(StateConflictError):
            services.complaints.make_decision(reviewed.id, moderator.id, "FullRefund")

    def test_failed_refund_aborts_decision(self, services, clock, moderator, reviewed, monkeypatch):
        monkeypatch.setattr(
            services.processor,
            "refund",
            lambda *a, **k: {"success": False, "message": "Order item already processed", "code": "already_processed"},
        )
        with pytest.raises(StateConflictError):
            services.complaints.make_decision(reviewed.id, moderator.id, "FullRefund")
        assert _ticket(reviewed.id).status == "InReview"
        assert "DecisionMade" not in _events(services, reviewed.id)

    def test_late_resolution_counts_a_breach(self, services, clock, moderator, reviewed):
        clock.advance(hours=49)
        t = services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        assert t.sla_breached is True
        assert services.stats.get_stats(moderator.id)["sla_breaches"] == 1

    def test_new_complaint_allowed_after_rejection(self, services, buyer, moderator, reviewed, file_complaint):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        line = db.session.get(OrderLine, reviewed.order_line_id)
        again = file_complaint(buyer, line)
        assert again.status == "Open"


class TestAppeals:
    def test_seller_appeals_refund_and_it_is_upheld(self, services, seller, moderator, senior_mod, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "FullRefund")

        t = services.complaints.file_appeal(reviewed.id, seller.id, "Buyer redeemed it")
        assert t.status == "AppealReview"
        assert t.escalation_level == "Level3_SeniorMod"
        assert t.original_resolution_type == "FullRefund"

        t = services.complaints.resolve_appeal(reviewed.id, senior_mod.id, "Upheld", "Logs confirm reuse")
        assert t.status == "AppealUpheld"
        assert t.resolution_type == "FullRefund"
        stats = services.stats.get_stats(moderator.id)
        assert (stats["appeals_received"], stats["appeals_overturned"]) == (1, 0)

    def test_overturn_after_refund_needs_manual_adjustment(self, services, seller, moderator, senior_mod, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "FullRefund")
        services.complaints.file_appeal(reviewed.id, seller.id, "Buyer redeemed it")

        t = services.complaints.resolve_appeal(
            reviewed.id, senior_mod.id, "Overturned", "Refund was wrong", new_resolution_type="Reject"
        )

        assert t.status == "AppealOverturned"
        assert t.resolution_type == "Reject"
        log = AuditLog.query.filter_by(action="manual_adjustment_required").one()
        assert json.loads(log.meta)["previous_resolution_type"] == "FullRefund"
        assert services.stats.get_stats(moderator.id)["appeals_overturned"] == 1

    def test_overturn_to_refund_while_held(self, services, clock, buyer, moderator, senior_mod, reviewed, wallet_of):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        services.complaints.file_appeal(reviewed.id, buyer.id, "Code never worked")
        assert db.session.get(OrderLine, reviewed.order_line_id).item_status == "Disputed"

        # An appeal under review blocks release even after the window
        clock.advance(hours=73)
        assert services.processor.disburse(reviewed.order_line_id)["code"] == "open_dispute"

        services.complaints.resolve_appeal(
            reviewed.id, senior_mod.id, "Overturned", "Seller logs missing", new_resolution_type="FullRefund"
        )
        assert wallet_of(buyer).balance == 1_000_000

    def test_appeal_window(self, services, clock, buyer, moderator, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        clock.advance(hours=72, seconds=1)
        with pytest.raises(WindowExpiredError):
            services.complaints.file_appeal(reviewed.id, buyer.id, "late")

    def test_only_parties_appeal(self, services, moderator, make_user, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        with pytest.raises(PermissionDeniedError):
            services.complaints.file_appeal(reviewed.id, make_user("buyer").id, "me too")

    def test_cannot_appeal_undecided_ticket(self, services, buyer, reviewed):
        with pytest.raises(StateConflictError):
            services.complaints.file_appeal(reviewed.id, buyer.id, "why")

    def test_overturn_needs_new_resolution(self, services, buyer, moderator, senior_mod, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        services.complaints.file_appeal(reviewed.id, buyer.id, "please")
        with pytest.raises(ValidationError):
            services.complaints.resolve_appeal(reviewed.id, senior_mod.id, "Overturned", "x")


class TestClosing:
    def test_staff_close_resolved(self, services, moderator, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        t = services.complaints.close_complaint(reviewed.id, moderator.id, "moderator", "done")
        assert t.status == "Closed"
        assert t.closed_at is not None

    def test_buyer_withdraws_open_ticket(self, services, buyer, ticket):
        t = services.complaints.close_complaint(ticket.id, buyer.id, "buyer", "found the code")

        assert t.status == "Closed"
        assert db.session.get(OrderLine, t.order_line_id).item_status == "Delivered"
        assert db.session.get(Order, t.order_id).status == "Paid"
        assert services.queue.entry_for_ticket(t.id).status == "Completed"
        assert _events(services, t.id)[:2] == ["Closed", "Withdrawn"]

    def test_seller_cannot_withdraw(self, services, seller, ticket):
        with pytest.raises(PermissionDeniedError):
            services.complaints.close_complaint(ticket.id, seller.id, "seller")

    def test_buyer_cannot_close_decided_ticket(self, services, buyer, moderator, reviewed):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        with pytest.raises(PermissionDeniedError):
            services.complaints.close_complaint(reviewed.id, buyer.id, "buyer")

    def test_ticket_under_review_cannot_close(self, services, moderator, reviewed):
        with pytest.raises(StateConflictError):
            services.complaints.close_complaint(reviewed.id, moderator.id, "moderator")

    def test_expired_appeal_windows_close(self, services, clock, moderator, reviewed, ticket):
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        assert services.complaints.close_expired_appeal_windows()["closed"] == 0

        clock.advance(hours=72)
        res = services.complaints.close_expired_appeal_windows()

        assert res["closed"] == 1
        assert _ticket(reviewed.id).status == "Closed"


class TestSlaMonitor:
    def test_flags_once_and_escalates(self, services, clock, moderator, reviewed):
        before = services.queue.entry_for_ticket(reviewed.id).queue_priority
        clock.advance(hours=48, minutes=1)

        first = services.complaints.flag_sla_breaches()
        second = services.complaints.flag_sla_breaches()

        assert first["flagged"] == 1
        assert second["flagged"] == 0
        assert _ticket(reviewed.id).sla_breached is True
        entry = services.queue.entry_for_ticket(reviewed.id)
        assert entry.is_escalated is True
        assert entry.queue_priority > before
        assert _events(services, reviewed.id).count("SlaBreached") == 1
        assert services.stats.get_stats(moderator.id)["sla_breaches"] == 1

    def test_breach_is_not_double_counted_at_resolution(self, services, clock, moderator, reviewed):
        clock.advance(hours=49)
        services.complaints.flag_sla_breaches()
        services.complaints.make_decision(reviewed.id, moderator.id, "Reject")
        stats = services.stats.get_stats(moderator.id)
        assert stats["sla_breaches"] == 1
        assert stats["on_time_resolutions"] == 0


class TestQueries:
    def test_parties_only_see_their_tickets(self, services, make_user, ticket, seller):
        assert services.complaints.get_complaint_by_id(ticket.id, seller.id, "seller")["id"] == ticket.id
        with pytest.raises(PermissionDeniedError):
            services.complaints.get_complaint_by_id(ticket.id, make_user("buyer").id, "buyer")

    def test_my_complaints_and_all_complaints(self, services, buyer, seller, make_paid_order, file_complaint, ticket):
        file_complaint(buyer, make_paid_order(buyer, seller, amounts=(5_000,)).lines[0])

        mine = services.complaints.get_my_complaints(buyer.id, limit=1)
        assert mine["total"] == 2
        assert len(mine["tickets"]) == 1

        allc = services.complaints.get_all_complaints(status="Open")
        assert allc["total"] == 2
        assert allc["tickets"][0]["order_value"] == 1_000_000

    def test_unknown_ticket(self, services):
        with pytest.raises(NotFoundError):
            services.complaints.get_timeline(77)


def test_ticket_codes_are_unique_and_well_formed(clock):
    codes = {generate_ticket_code(clock.now) for _ in range(50)}
    assert len(codes) > 1
    for code in codes:
        prefix, stamp, suffix = code.split("-")
        assert prefix == "TKT"
        assert stamp.isalnum() and stamp == stamp.upper()
        assert len(suffix) == 4
