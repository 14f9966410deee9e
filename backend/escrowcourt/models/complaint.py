import json

from sqlalchemy import text

from escrowcourt.extensions import db
from escrowcourt.models.statuses import EscalationLevel, ResolutionType, SellerResponseStatus, TicketStatus
from escrowcourt.utils.clock import utc_now


def _iso(value):
    return value.isoformat() if value else None


class ComplaintTicket(db.Model):
    __tablename__ = "complaint_tickets"
    __table_args__ = (
        # One active ticket per order line
        db.Index(
            "uq_complaint_tickets_active_line",
            "order_line_id",
            unique=True,
            sqlite_where=text("status IN ('Open', 'InReview', 'NeedMoreInfo')"),
            postgresql_where=text("status IN ('Open', 'InReview', 'NeedMoreInfo')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    ticket_code = db.Column(db.String(40), nullable=False, unique=True, index=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=False, index=True)

    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(64), nullable=True)
    subcategory = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(24), nullable=False, default=TicketStatus.OPEN.value, index=True)

    resolution_type = db.Column(db.String(24), nullable=False, default=ResolutionType.NONE.value)
    refund_amount = db.Column(db.BigInteger, nullable=True)
    decision_note = db.Column(db.Text, nullable=True)
    decided_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    decided_at = db.Column(db.DateTime, nullable=True)

    assigned_moderator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    first_response_at = db.Column(db.DateTime, nullable=True)

    # Negotiation with the seller while the ticket is still Open
    seller_response_deadline = db.Column(db.DateTime, nullable=True)
    seller_response_status = db.Column(db.String(16), nullable=False, default=SellerResponseStatus.PENDING.value)
    seller_response = db.Column(db.Text, nullable=True)
    seller_responded_at = db.Column(db.DateTime, nullable=True)
    seller_proposed_resolution = db.Column(db.String(24), nullable=True)
    seller_proposed_refund_amount = db.Column(db.BigInteger, nullable=True)
    escalation_reason = db.Column(db.Text, nullable=True)
    escalated_at = db.Column(db.DateTime, nullable=True)

    appeal_deadline = db.Column(db.DateTime, nullable=True)
    appeal_reason = db.Column(db.Text, nullable=True)
    appeal_filed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    appeal_filed_at = db.Column(db.DateTime, nullable=True)
    appeal_decided_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    appeal_decided_at = db.Column(db.DateTime, nullable=True)
    original_resolution_type = db.Column(db.String(24), nullable=True)

    # Snapshot taken when the ticket is filed
    order_value = db.Column(db.BigInteger, nullable=False, default=0)
    buyer_trust_level = db.Column(db.Integer, nullable=False, default=50)
    seller_trust_level = db.Column(db.Integer, nullable=False, default=50)
    order_snapshot = db.Column(db.Text, nullable=True)

    calculated_priority = db.Column(db.Integer, nullable=False, default=0)
    escalation_level = db.Column(db.String(24), nullable=False, default=EscalationLevel.MODERATOR.value)
    sla_breached = db.Column(db.Boolean, nullable=False, default=False)

    closed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def snapshot(self) -> dict:
        try:
            return json.loads(self.order_snapshot or "{}")
        except ValueError:
            return {}

    def to_dict(self, *, include_internal: bool = False):
        data = {
            "id": int(self.id),
            "ticket_code": self.ticket_code,
            "customer_id": int(self.customer_id),
            "seller_id": int(self.seller_id),
            "order_id": int(self.order_id),
            "order_line_id": int(self.order_line_id),
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "subcategory": self.subcategory,
            "status": self.status,
            "resolution_type": self.resolution_type,
            "refund_amount": int(self.refund_amount) if self.refund_amount is not None else None,
            "decision_note": self.decision_note,
            "decided_by": self.decided_by,
            "decided_at": _iso(self.decided_at),
            "assigned_moderator_id": self.assigned_moderator_id,
            "first_response_at": _iso(self.first_response_at),
            "seller_response_deadline": _iso(self.seller_response_deadline),
            "seller_response_status": self.seller_response_status,
            "seller_response": self.seller_response,
            "seller_responded_at": _iso(self.seller_responded_at),
            "seller_proposed_resolution": self.seller_proposed_resolution,
            "seller_proposed_refund_amount": (
                int(self.seller_proposed_refund_amount) if self.seller_proposed_refund_amount is not None else None
            ),
            "appeal_deadline": _iso(self.appeal_deadline),
            "appeal_reason": self.appeal_reason,
            "appeal_filed_by": self.appeal_filed_by,
            "appeal_decided_at": _iso(self.appeal_decided_at),
            "original_resolution_type": self.original_resolution_type,
            "order_value": int(self.order_value or 0),
            "order_snapshot": self.snapshot(),
            "escalation_level": self.escalation_level,
            "closed_at": _iso(self.closed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_internal:
            data.update({
                "buyer_trust_level": int(self.buyer_trust_level or 0),
                "seller_trust_level": int(self.seller_trust_level or 0),
                "calculated_priority": int(self.calculated_priority or 0),
                "sla_breached": bool(self.sla_breached),
                "appeal_decided_by": self.appeal_decided_by,
                "escalation_reason": self.escalation_reason,
                "escalated_at": _iso(self.escalated_at),
            })
        return data


class ComplaintEvidence(db.Model):
    __tablename__ = "complaint_evidence"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("complaint_tickets.id"), nullable=False, index=True)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    # buyer | seller
    party = db.Column(db.String(16), nullable=False)
    # Image | Video | Screenshot | Document
    type = db.Column(db.String(16), nullable=False)
    url = db.Column(db.String(500), nullable=False)
    description = db.Column(db.String(500), nullable=True)

    uploaded_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "ticket_id": int(self.ticket_id),
            "uploaded_by": int(self.uploaded_by),
            "party": self.party,
            "type": self.type,
            "url": self.url,
            "description": self.description or "",
            "uploaded_at": _iso(self.uploaded_at),
        }


class ComplaintInternalNote(db.Model):
    __tablename__ = "complaint_internal_notes"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("complaint_tickets.id"), nullable=False, index=True)
    author_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    content = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "ticket_id": int(self.ticket_id),
            "author_id": int(self.author_id),
            "content": self.content,
            "created_at": _iso(self.created_at),
        }
