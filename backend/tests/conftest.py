"""
Shared fixtures for the escrow engine tests.

Every test gets a fresh in-memory SQLite database and a frozen clock that
the test moves forward explicitly.
"""

import itertools
from datetime import datetime, timedelta

import pytest

from escrowcourt import create_app
from escrowcourt.extensions import db
from escrowcourt.models import InventoryItem, Order, OrderLine, User, Wallet
from escrowcourt.services import get_services
from escrowcourt.utils.wallets import topup

START = datetime(2026, 3, 2, 9, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def app(clock):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "LOG_LEVEL": "WARNING",
        },
        clock=clock,
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(app):
    return get_services()


_seq = itertools.count(1)


@pytest.fixture
def make_user(app):
    def _make(role="buyer", *, trust_level=50, name=None):
        n = next(_seq)
        user = User(
            name=name or f"{role}-{n}",
            email=f"{role}-{n}@example.test",
            role=role,
            trust_level=trust_level,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def buyer(make_user):
    return make_user("buyer", trust_level=80)


@pytest.fixture
def seller(make_user):
    return make_user("seller", trust_level=40)


@pytest.fixture
def moderator(make_user):
    return make_user("moderator")


@pytest.fixture
def senior_mod(make_user):
    return make_user("senior_mod")


@pytest.fixture
def make_paid_order(services):
    """Create an order with one line per amount, fund the buyer, and place the escrow hold."""

    def _make(buyer, seller, amounts=(1_000_000,), *, fund=True):
        n = next(_seq)
        order = Order(order_code=f"ORD-{n:05d}", buyer_id=buyer.id, total_amount=sum(amounts))
        db.session.add(order)
        db.session.flush()
        for i, amount in enumerate(amounts):
            item = InventoryItem(seller_id=seller.id, sku=f"SKU-{n}-{i}")
            db.session.add(item)
            db.session.flush()
            db.session.add(
                OrderLine(
                    order_id=order.id,
                    seller_id=seller.id,
                    inventory_item_id=item.id,
                    product_title=f"Gift card #{n}-{i}",
                    quantity=1,
                    unit_price=amount,
                    subtotal=amount,
                    hold_amount=amount,
                )
            )
        db.session.commit()
        if fund:
            topup(services.wallets, buyer.id, sum(amounts), note="Test funding")
        services.processor.place_hold(order.id)
        return db.session.get(Order, order.id)

    return _make


@pytest.fixture
def paid_line(buyer, seller, make_paid_order):
    order = make_paid_order(buyer, seller)
    return order.lines[0]


@pytest.fixture
def wallet_of(app):
    def _get(user):
        w = Wallet.query.filter_by(user_id=user.id).first()
        if w is not None:
            db.session.refresh(w)
        return w

    return _get


@pytest.fixture
def file_complaint(services):
    def _file(buyer, line, **kwargs):
        kwargs.setdefault("title", "Code already redeemed")
        kwargs.setdefault("content", "The gift card code says it was used before I got it.")
        return services.complaints.create_complaint(buyer.id, line.id, **kwargs)

    return _file
