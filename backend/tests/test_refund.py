import json

from escrowcourt.extensions import db
from escrowcourt.models import AuditLog, InventoryItem, Order, OrderLine, WalletTransaction
from escrowcourt.services.disbursement import DisbursementProcessor


def test_full_refund_returns_hold_to_buyer(services, buyer, paid_line, wallet_of):
    res = services.processor.refund(paid_line.id, 1_000_000)

    assert res["success"] is True
    w = wallet_of(buyer)
    assert (w.balance, w.hold_balance) == (1_000_000, 0)
    line = db.session.get(OrderLine, paid_line.id)
    assert line.hold_status == "Refunded"
    assert line.item_status == "Refunded"
    assert db.session.get(Order, line.order_id).status == "Refunded"
    assert db.session.get(InventoryItem, line.inventory_item_id).status == "Available"
    refunds = WalletTransaction.query.filter_by(wallet_id=w.id, type="Refund").all()
    assert [(t.direction, t.amount) for t in refunds] == [("In", 1_000_000)]


def test_partial_refund_keeps_remainder_on_hold(services, buyer, seller, paid_line, wallet_of):
    res = services.processor.refund(paid_line.id, 300_000, ticket_id=None)

    assert res["success"] is True
    assert res["remainder"] == 700_000
    bw = wallet_of(buyer)
    assert (bw.balance, bw.hold_balance) == (300_000, 700_000)
    assert wallet_of(seller) is None
    assert db.session.get(Order, paid_line.order_id).status == "Disputed"

    log = AuditLog.query.filter_by(action="escrow_remainder_held").one()
    assert json.loads(log.meta)["remainder"] == 700_000


def test_partial_refund_can_release_remainder_to_seller(app, services, clock, buyer, seller, paid_line, wallet_of):
    processor = DisbursementProcessor(
        wallets=services.wallets,
        inventory=services.inventory,
        clock=clock,
        partial_refund_remainder="release_to_seller",
    )

    res = processor.refund(paid_line.id, 300_000)

    assert res["success"] is True
    bw, sw = wallet_of(buyer), wallet_of(seller)
    assert (bw.balance, bw.hold_balance) == (300_000, 0)
    assert sw.balance == 665_000
    assert AuditLog.query.filter_by(action="escrow_remainder_held").count() == 0


def test_refund_rejects_bad_amounts(services, paid_line, buyer, wallet_of):
    for amount in (0, -5, 1_000_001, "lots"):
        res = services.processor.refund(paid_line.id, amount)
        assert res["success"] is False
        assert res["code"] == "invalid_amount"
    assert wallet_of(buyer).hold_balance == 1_000_000


def test_refund_after_release_is_refused(services, clock, paid_line, buyer, wallet_of):
    clock.advance(hours=72)
    services.processor.disburse(paid_line.id)

    res = services.processor.refund(paid_line.id, 1_000_000)

    assert res["code"] == "already_processed"
    assert wallet_of(buyer).balance == 0


def test_refund_is_at_most_once(services, paid_line, buyer, wallet_of):
    assert services.processor.refund(paid_line.id, 1_000_000)["success"] is True
    assert services.processor.refund(paid_line.id, 1_000_000)["code"] == "already_processed"
    assert wallet_of(buyer).balance == 1_000_000


def test_full_refund_of_one_line_leaves_order_disputed(services, buyer, seller, make_paid_order):
    order = make_paid_order(buyer, seller, amounts=(100_000, 200_000))

    services.processor.refund(order.lines[0].id, 100_000)

    assert db.session.get(Order, order.id).status == "Disputed"
