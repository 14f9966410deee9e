import threading

import pytest

from escrowcourt import create_app
from escrowcourt.errors import ValidationError
from escrowcourt.extensions import db
from escrowcourt.models import ComplaintQueueEntry, ComplaintTicket, InventoryItem, Order, OrderLine, User
from escrowcourt.services import get_services
from escrowcourt.utils.wallets import topup


def _score(queue, **overrides):
    params = dict(
        order_value=500_000,
        buyer_trust=50,
        seller_trust=50,
        ticket_age_hours=0.0,
        is_high_value=False,
        is_escalated=False,
    )
    params.update(overrides)
    return queue.calculate_priority_score(**params)


class TestPriorityScore:
    def test_reference_values(self, services):
        q = services.queue
        assert _score(q, order_value=1_000_000, is_high_value=True) == 60
        assert _score(q, order_value=0, buyer_trust=0, seller_trust=100) == 0

    def test_monotonic_in_age(self, services):
        q = services.queue
        scores = [_score(q, ticket_age_hours=h) for h in (0, 1, 12, 36, 72, 200)]
        assert scores == sorted(scores)
        assert scores[-1] == scores[-2]

    def test_escalation_strictly_raises_below_cap(self, services):
        q = services.queue
        plain = _score(q)
        assert _score(q, is_escalated=True) > plain

    def test_capped_at_100(self, services):
        q = services.queue
        top = _score(
            q, order_value=5_000_000, buyer_trust=100, seller_trust=0,
            ticket_age_hours=500, is_high_value=True, is_escalated=True,
        )
        assert top == 100

    def test_score_is_a_whole_number(self, services):
        value = _score(services.queue, order_value=333_333, buyer_trust=37, seller_trust=61, ticket_age_hours=5)
        assert isinstance(value, int)
        # 23.14 before rounding
        assert value == 23

    def test_half_rounds_up(self, services):
        # 22.5 exactly: 50_000 order, buyer trust 80, seller trust 40
        assert _score(services.queue, order_value=50_000, buyer_trust=80, seller_trust=40) == 23

    def test_high_value_threshold(self, services):
        assert services.queue.is_high_value(1_000_000) is True
        assert services.queue.is_high_value(999_999) is False


@pytest.fixture
def three_tickets(buyer, seller, make_paid_order, file_complaint):
    out = []
    for amount in (50_000, 1_500_000, 400_000):
        order = make_paid_order(buyer, seller, amounts=(amount,))
        out.append(file_complaint(buyer, order.lines[0]))
    return out


class TestPicking:
    def test_pick_takes_highest_priority(self, services, moderator, three_tickets):
        entry = services.queue.pick_next_from_queue(moderator.id)

        assert entry.ticket_id == three_tickets[1].id
        assert entry.status == "Assigned"
        assert entry.assigned_moderator_id == moderator.id
        ticket = db.session.get(ComplaintTicket, entry.ticket_id)
        assert ticket.status == "InReview"
        assert ticket.first_response_at is not None

    def test_pick_multiple_in_priority_order(self, services, moderator, three_tickets):
        picked = services.queue.pick_multiple_from_queue(moderator.id, 10)
        assert [e.ticket_id for e in picked] == [three_tickets[i].id for i in (1, 2, 0)]
        assert services.queue.pick_next_from_queue(moderator.id) is None

    def test_pick_multiple_is_capped(self, services, moderator, three_tickets):
        services.queue.max_pick_count = 2
        assert len(services.queue.pick_multiple_from_queue(moderator.id, 50)) == 2

    def test_pick_multiple_rejects_non_positive(self, services, moderator):
        with pytest.raises(ValidationError):
            services.queue.pick_multiple_from_queue(moderator.id, 0)

    def test_empty_queue(self, services, moderator):
        assert services.queue.pick_next_from_queue(moderator.id) is None

    def test_equal_priority_is_first_come_first_served(self, services, clock, buyer, seller, moderator, make_paid_order, file_complaint):
        first = file_complaint(buyer, make_paid_order(buyer, seller, amounts=(10_000,)).lines[0])
        clock.advance(minutes=5)
        file_complaint(buyer, make_paid_order(buyer, seller, amounts=(10_000,)).lines[0])

        assert services.queue.pick_next_from_queue(moderator.id).ticket_id == first.id

    def test_near_equal_scores_round_to_a_tie_and_keep_filing_order(
        self, services, clock, buyer, seller, moderator, make_paid_order, file_complaint
    ):
        # 22.5 and 22.56 both round to 23
        first = file_complaint(buyer, make_paid_order(buyer, seller, amounts=(50_000,)).lines[0])
        clock.advance(minutes=1)
        second = file_complaint(buyer, make_paid_order(buyer, seller, amounts=(52_000,)).lines[0])

        assert services.queue.entry_for_ticket(first.id).queue_priority == 23
        assert services.queue.entry_for_ticket(second.id).queue_priority == 23
        assert services.queue.pick_next_from_queue(moderator.id).ticket_id == first.id


class TestReassignment:
    def test_reassigning_in_progress_work_keeps_it_in_progress(self, services, make_user, moderator, three_tickets):
        entry = services.queue.pick_next_from_queue(moderator.id)
        services.complaints.add_internal_note(entry.ticket_id, moderator.id, "Checking the code with the issuer")
        assert services.queue.entry_for_ticket(entry.ticket_id).status == "InProgress"
        other = make_user("moderator")

        services.complaints.assign_to_moderator(entry.ticket_id, other.id)

        moved = services.queue.entry_for_ticket(entry.ticket_id)
        db.session.refresh(moved)
        assert moved.status == "InProgress"
        assert moved.assigned_moderator_id == other.id
        assert db.session.get(ComplaintTicket, entry.ticket_id).assigned_moderator_id == other.id

    def test_assigning_waiting_work_marks_it_assigned(self, services, moderator, three_tickets):
        services.complaints.assign_to_moderator(three_tickets[0].id, moderator.id)

        entry = services.queue.entry_for_ticket(three_tickets[0].id)
        db.session.refresh(entry)
        assert entry.status == "Assigned"


class TestRefreshAndStats:
    def test_refresh_raises_priority_with_age(self, services, clock, three_tickets):
        before = {e.id: e.queue_priority for e in ComplaintQueueEntry.query.all()}
        clock.advance(hours=12)

        res = services.queue.refresh_priorities()

        assert res["checked"] == 3
        assert res["updated"] == 3
        for entry in ComplaintQueueEntry.query.all():
            assert entry.queue_priority > before[entry.id]
            assert entry.ticket_age == 12.0
            assert db.session.get(ComplaintTicket, entry.ticket_id).calculated_priority == entry.queue_priority

    def test_get_queue_filters_and_sorts(self, services, three_tickets):
        res = services.queue.get_queue(is_high_value=True)
        assert res["total"] == 1
        assert res["items"][0]["ticket_id"] == three_tickets[1].id

        by_value = services.queue.get_queue(sort_by="order_value", sort_order="asc")
        assert [i["order_value"] for i in by_value["items"]] == [50_000, 400_000, 1_500_000]

    def test_get_queue_rejects_unknown_sort(self, services):
        with pytest.raises(ValidationError):
            services.queue.get_queue(sort_by="mood")

    def test_stats_and_workload(self, services, clock, moderator, three_tickets):
        services.queue.pick_next_from_queue(moderator.id)
        clock.advance(minutes=30)

        stats = services.queue.get_queue_stats()
        assert stats["total_in_queue"] == 2
        assert stats["total_assigned"] == 1
        assert stats["high_value_count"] == 0
        assert stats["avg_wait_time_minutes"] == 30.0

        workload = services.queue.get_moderator_workload()
        assert workload == [{
            "moderator_id": moderator.id,
            "moderator_name": moderator.name,
            "assigned_count": 1,
            "in_progress_count": 0,
            "completed_today_count": 0,
        }]


def test_two_moderators_never_claim_the_same_entry(tmp_path):
    """Both moderators pick at the same instant; exactly one gets the only waiting ticket."""
    db_path = tmp_path / "claims.db"
    app = create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}"})

    with app.app_context():
        db.create_all()
        services = get_services()
        buyer = User(name="b", email="b@example.test", role="buyer")
        seller = User(name="s", email="s@example.test", role="seller")
        mods = [User(name=f"m{i}", email=f"m{i}@example.test", role="moderator") for i in range(2)]
        db.session.add_all([buyer, seller, *mods])
        db.session.commit()
        item = InventoryItem(seller_id=seller.id)
        order = Order(order_code="ORD-RACE", buyer_id=buyer.id)
        db.session.add_all([item, order])
        db.session.flush()
        db.session.add(OrderLine(order_id=order.id, seller_id=seller.id, inventory_item_id=item.id, hold_amount=1_000))
        db.session.commit()
        topup(services.wallets, buyer.id, 1_000)
        services.processor.place_hold(order.id)
        ticket = services.complaints.create_complaint(buyer.id, order.lines[0].id, "race", "race")
        ticket_id = ticket.id
        mod_ids = [m.id for m in mods]
        db.session.remove()

    barrier = threading.Barrier(2)
    results = {}
    errors = []

    def worker(moderator_id):
        with app.app_context():
            try:
                barrier.wait(timeout=5)
                entry = get_services().queue.pick_next_from_queue(moderator_id)
                results[moderator_id] = entry.ticket_id if entry else None
            except Exception as exc:
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(m,)) for m in mod_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert sorted(results.values(), key=lambda v: v is None) == [ticket_id, None]

    with app.app_context():
        entry = ComplaintQueueEntry.query.filter_by(ticket_id=ticket_id).one()
        winner = next(m for m, got in results.items() if got == ticket_id)
        assert entry.assigned_moderator_id == winner
        assert db.session.get(ComplaintTicket, ticket_id).assigned_moderator_id == winner
        db.drop_all()
