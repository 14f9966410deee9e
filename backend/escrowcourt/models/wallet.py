from escrowcourt.extensions import db
from escrowcourt.utils.clock import utc_now


class Wallet(db.Model):
    __tablename__ = "wallets"
    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        db.CheckConstraint("hold_balance >= 0", name="ck_wallets_hold_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    balance = db.Column(db.BigInteger, nullable=False, default=0)

    # Escrowed funds on the buyer side
    hold_balance = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="VND")

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "balance": int(self.balance or 0),
            "hold_balance": int(self.hold_balance or 0),
            "currency": self.currency or "VND",
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
