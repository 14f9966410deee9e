import json

from sqlalchemy import event

from escrowcourt.extensions import db
from escrowcourt.utils.clock import utc_now


class ComplaintTimelineEvent(db.Model):
    __tablename__ = "complaint_timeline"

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey("complaint_tickets.id"), nullable=False, index=True)

    event_type = db.Column(db.String(32), nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)
    actor_role = db.Column(db.String(16), nullable=False, default="system")
    description = db.Column(db.String(500), nullable=False, default="")
    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)

    def to_dict(self):
        try:
            meta = json.loads(self.meta) if self.meta else {}
        except ValueError:
            meta = {}
        return {
            "id": int(self.id),
            "ticket_id": int(self.ticket_id),
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "description": self.description or "",
            "meta": meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(ComplaintTimelineEvent, "before_update")
def _refuse_event_update(mapper, connection, target):
    raise RuntimeError("timeline events are append-only")


@event.listens_for(ComplaintTimelineEvent, "before_delete")
def _refuse_event_delete(mapper, connection, target):
    raise RuntimeError("timeline events are append-only")
