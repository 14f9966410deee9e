from escrowcourt.extensions import db
from escrowcourt.models.statuses import InventoryStatus
from escrowcourt.utils.clock import utc_now


class InventoryItem(db.Model):
    __tablename__ = "inventory_items"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    sku = db.Column(db.String(80), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=InventoryStatus.AVAILABLE.value, index=True)
    reserved_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "sku": self.sku or "",
            "status": self.status,
            "reserved_at": self.reserved_at.isoformat() if self.reserved_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }
