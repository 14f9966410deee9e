from __future__ import annotations

import json

from escrowcourt.extensions import db
from escrowcourt.utils.clock import utc_now


class AuditLog(db.Model):
    """Operational findings (ledger anomalies, manual-adjustment requests)."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    actor_user_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    target_type = db.Column(db.String(64), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    @classmethod
    def record(cls, action: str, *, target_type: str, target_id: int, meta: dict | None = None, actor_user_id=None, at=None):
        row = cls(
            actor_user_id=actor_user_id,
            action=action,
            target_type=target_type,
            target_id=int(target_id),
            meta=json.dumps(meta or {}, default=str),
            created_at=at or utc_now(),
        )
        db.session.add(row)
        return row

    def to_dict(self):
        try:
            meta = json.loads(self.meta) if self.meta else {}
        except ValueError:
            meta = {"raw": self.meta}
        return {
            "id": int(self.id),
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id else None,
            "action": self.action,
            "target_type": self.target_type or "",
            "target_id": int(self.target_id) if self.target_id else None,
            "meta": meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
