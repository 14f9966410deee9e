from escrowcourt.extensions import db
from escrowcourt.models.statuses import HoldStatus, ItemStatus, OrderStatus
from escrowcourt.utils.clock import utc_now


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_code = db.Column(db.String(40), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    total_amount = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="VND")
    status = db.Column(db.String(24), nullable=False, default=OrderStatus.PENDING_PAYMENT.value, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    lines = db.relationship("OrderLine", backref="order", lazy=True, order_by="OrderLine.id")

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_code": self.order_code,
            "buyer_id": int(self.buyer_id),
            "total_amount": int(self.total_amount or 0),
            "currency": self.currency or "VND",
            "status": self.status,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "lines": [line.to_dict() for line in (self.lines or [])],
        }


class OrderLine(db.Model):
    """One escrow unit: the held money for a single purchased item."""

    __tablename__ = "order_lines"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    inventory_item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=True)

    product_title = db.Column(db.String(200), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.BigInteger, nullable=False, default=0)
    subtotal = db.Column(db.BigInteger, nullable=False, default=0)

    hold_amount = db.Column(db.BigInteger, nullable=False, default=0)
    hold_status = db.Column(db.String(16), nullable=False, default=HoldStatus.HOLDING.value, index=True)
    item_status = db.Column(db.String(24), nullable=False, default=ItemStatus.WAITING_DELIVERY.value)

    hold_at = db.Column(db.DateTime, nullable=True, index=True)
    release_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "seller_id": int(self.seller_id),
            "inventory_item_id": int(self.inventory_item_id) if self.inventory_item_id else None,
            "product_title": self.product_title or "",
            "quantity": int(self.quantity or 0),
            "unit_price": int(self.unit_price or 0),
            "subtotal": int(self.subtotal or 0),
            "hold_amount": int(self.hold_amount or 0),
            "hold_status": self.hold_status,
            "item_status": self.item_status,
            "hold_at": self.hold_at.isoformat() if self.hold_at else None,
            "release_at": self.release_at.isoformat() if self.release_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }
