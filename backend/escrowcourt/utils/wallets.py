from __future__ import annotations

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from escrowcourt.errors import StateConflictError, ValidationError
from escrowcourt.extensions import db
from escrowcourt.models import Wallet, WalletTransaction
from escrowcourt.models.statuses import Direction, RefType, TxnType
from escrowcourt.utils.clock import utc_now
from escrowcourt.utils.unit_of_work import conditional_update, in_unit_of_work, unit_of_work


class WalletProvider:
    """Wallet lookup and creation, one wallet per user."""

    def __init__(self, currency: str = "VND"):
        self.currency = currency

    def get(self, user_id: int) -> Wallet | None:
        return Wallet.query.filter_by(user_id=int(user_id)).first()

    def get_or_create(self, user_id: int) -> Wallet:
        w = self.get(user_id)
        if w:
            return w
        if in_unit_of_work():
            # Savepoint so a concurrent insert does not poison the outer unit
            try:
                with db.session.begin_nested():
                    w = Wallet(user_id=int(user_id), balance=0, hold_balance=0, currency=self.currency)
                    db.session.add(w)
                return w
            except IntegrityError:
                w = self.get(user_id)
                if w:
                    return w
                raise
        w = Wallet(user_id=int(user_id), balance=0, hold_balance=0, currency=self.currency)
        try:
            db.session.add(w)
            db.session.commit()
            return w
        except IntegrityError:
            db.session.rollback()
            w = self.get(user_id)
            if w:
                return w
            raise


def adjust_wallet(wallet_id: int, *, balance_delta: int = 0, hold_delta: int = 0) -> None:
    """Apply deltas in SQL; refuses to drive either balance below zero."""
    if not balance_delta and not hold_delta:
        return
    ok = conditional_update(
        Wallet,
        wallet_id,
        [Wallet.balance + int(balance_delta) >= 0, Wallet.hold_balance + int(hold_delta) >= 0],
        {
            "balance": Wallet.balance + int(balance_delta),
            "hold_balance": Wallet.hold_balance + int(hold_delta),
            "updated_at": utc_now(),
        },
    )
    if not ok:
        raise StateConflictError(
            "insufficient wallet funds",
            wallet_id=int(wallet_id),
            balance_delta=int(balance_delta),
            hold_delta=int(hold_delta),
        )


def record_txn(
    *,
    wallet_id: int,
    type: TxnType,
    direction: Direction,
    amount: int,
    ref_type: RefType,
    ref_id: int | None,
    note: str = "",
    at=None,
) -> WalletTransaction:
    amt = int(amount)
    if amt <= 0:
        raise ValidationError("transaction amount must be positive", amount=amt)
    txn = WalletTransaction(
        wallet_id=int(wallet_id),
        type=type.value,
        direction=direction.value,
        amount=amt,
        ref_type=ref_type.value,
        ref_id=int(ref_id) if ref_id is not None else None,
        note=(note or "")[:240],
        created_at=at or utc_now(),
    )
    db.session.add(txn)
    return txn


def topup(wallets: WalletProvider, user_id: int, amount: int, *, note: str = "Topup") -> WalletTransaction:
    amt = int(amount)
    if amt <= 0:
        raise ValidationError("topup amount must be positive", amount=amt)
    w = wallets.get_or_create(int(user_id))
    with unit_of_work():
        adjust_wallet(w.id, balance_delta=amt)
        txn = record_txn(
            wallet_id=w.id,
            type=TxnType.TOPUP,
            direction=Direction.IN,
            amount=amt,
            ref_type=RefType.SYSTEM,
            ref_id=None,
            note=note,
        )
    current_app.logger.info("wallet topup user=%s amount=%s", user_id, amt)
    return txn


# (type, direction) -> (balance sign, hold sign)
LEDGER_RULES = {
    (TxnType.TOPUP.value, Direction.IN.value): (1, 0),
    (TxnType.ADJUSTMENT.value, Direction.IN.value): (1, 0),
    (TxnType.ADJUSTMENT.value, Direction.OUT.value): (-1, 0),
    (TxnType.PURCHASE.value, Direction.OUT.value): (-1, 0),
    (TxnType.HOLD.value, Direction.OUT.value): (-1, 1),
    (TxnType.RELEASE.value, Direction.OUT.value): (0, -1),
    (TxnType.RELEASE.value, Direction.IN.value): (1, 0),
    (TxnType.REFUND.value, Direction.IN.value): (1, -1),
}


def reconstruct_balances(wallet_id: int) -> tuple[int, int, list[tuple[str, str]]]:
    """Rebuild (balance, hold_balance) from the transaction history.

    The third element lists (type, direction) pairs with no ledger rule.
    """
    rows = (
        db.session.query(
            WalletTransaction.type,
            WalletTransaction.direction,
            func.coalesce(func.sum(WalletTransaction.amount), 0),
        )
        .filter(WalletTransaction.wallet_id == int(wallet_id))
        .group_by(WalletTransaction.type, WalletTransaction.direction)
        .all()
    )
    balance = 0
    hold = 0
    unknown = []
    for txn_type, direction, total in rows:
        rule = LEDGER_RULES.get((txn_type, direction))
        if rule is None:
            unknown.append((txn_type, direction))
            continue
        balance += rule[0] * int(total or 0)
        hold += rule[1] * int(total or 0)
    return balance, hold, unknown
