from sqlalchemy import event

from escrowcourt.extensions import db
from escrowcourt.utils.clock import utc_now


class WalletTransaction(db.Model):
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)

    # Topup | Purchase | Hold | Release | Refund | Adjustment
    type = db.Column(db.String(16), nullable=False, index=True)
    # In | Out
    direction = db.Column(db.String(4), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)

    ref_type = db.Column(db.String(16), nullable=False)
    ref_id = db.Column(db.Integer, nullable=True, index=True)
    note = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "wallet_id": int(self.wallet_id),
            "type": self.type,
            "direction": self.direction,
            "amount": int(self.amount or 0),
            "ref_type": self.ref_type,
            "ref_id": int(self.ref_id) if self.ref_id is not None else None,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(WalletTransaction, "before_update")
def _refuse_txn_update(mapper, connection, target):
    raise RuntimeError("wallet transactions are append-only")


@event.listens_for(WalletTransaction, "before_delete")
def _refuse_txn_delete(mapper, connection, target):
    raise RuntimeError("wallet transactions are append-only")
