from escrowcourt.extensions import db
from escrowcourt.models.statuses import QueueStatus
from escrowcourt.utils.clock import utc_now


class ComplaintQueueEntry(db.Model):
    __tablename__ = "complaint_queue"
    __table_args__ = (
        db.Index("ix_complaint_queue_pick_order", "status", "queue_priority", "added_to_queue_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("complaint_tickets.id"), nullable=False, unique=True, index=True)

    assigned_moderator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    queue_priority = db.Column(db.Integer, nullable=False, default=0)
    estimated_resolution_minutes = db.Column(db.Integer, nullable=False, default=120)

    added_to_queue_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    # InQueue | Assigned | InProgress | Completed
    status = db.Column(db.String(16), nullable=False, default=QueueStatus.IN_QUEUE.value)
    claim_token = db.Column(db.String(36), nullable=True, unique=True)

    # Priority inputs
    order_value = db.Column(db.BigInteger, nullable=False, default=0)
    buyer_trust_level = db.Column(db.Integer, nullable=False, default=50)
    seller_trust_level = db.Column(db.Integer, nullable=False, default=50)
    ticket_age = db.Column(db.Float, nullable=False, default=0.0)
    is_high_value = db.Column(db.Boolean, nullable=False, default=False)
    is_escalated = db.Column(db.Boolean, nullable=False, default=False)

    ticket = db.relationship("ComplaintTicket", lazy="joined")

    def to_dict(self):
        ticket = self.ticket
        return {
            "id": int(self.id),
            "ticket_id": int(self.ticket_id),
            "ticket_code": ticket.ticket_code if ticket else None,
            "ticket_status": ticket.status if ticket else None,
            "title": ticket.title if ticket else None,
            "assigned_moderator_id": self.assigned_moderator_id,
            "queue_priority": int(self.queue_priority or 0),
            "estimated_resolution_minutes": int(self.estimated_resolution_minutes or 0),
            "added_to_queue_at": self.added_to_queue_at.isoformat() if self.added_to_queue_at else None,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status,
            "order_value": int(self.order_value or 0),
            "ticket_age": float(self.ticket_age or 0.0),
            "is_high_value": bool(self.is_high_value),
            "is_escalated": bool(self.is_escalated),
        }
