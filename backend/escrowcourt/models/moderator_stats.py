from escrowcourt.extensions import db
from escrowcourt.utils.clock import utc_now


class ModeratorDailyStats(db.Model):
    __tablename__ = "moderator_daily_stats"
    __table_args__ = (
        db.UniqueConstraint("moderator_id", "day", name="uq_moderator_daily_stats_day"),
    )

    id = db.Column(db.Integer, primary_key=True)
    moderator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    day = db.Column(db.Date, nullable=False, index=True)

    tickets_assigned = db.Column(db.Integer, nullable=False, default=0)
    tickets_resolved = db.Column(db.Integer, nullable=False, default=0)
    full_refunds = db.Column(db.Integer, nullable=False, default=0)
    partial_refunds = db.Column(db.Integer, nullable=False, default=0)
    rejections = db.Column(db.Integer, nullable=False, default=0)
    replacements = db.Column(db.Integer, nullable=False, default=0)
    appeals_received = db.Column(db.Integer, nullable=False, default=0)
    appeals_overturned = db.Column(db.Integer, nullable=False, default=0)
    sla_breaches = db.Column(db.Integer, nullable=False, default=0)
    on_time_resolutions = db.Column(db.Integer, nullable=False, default=0)
    total_resolution_minutes = db.Column(db.Float, nullable=False, default=0.0)
    avg_resolution_minutes = db.Column(db.Float, nullable=False, default=0.0)

    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "moderator_id": int(self.moderator_id),
            "day": self.day.isoformat() if self.day else None,
            "tickets_assigned": int(self.tickets_assigned or 0),
            "tickets_resolved": int(self.tickets_resolved or 0),
            "full_refunds": int(self.full_refunds or 0),
            "partial_refunds": int(self.partial_refunds or 0),
            "rejections": int(self.rejections or 0),
            "replacements": int(self.replacements or 0),
            "appeals_received": int(self.appeals_received or 0),
            "appeals_overturned": int(self.appeals_overturned or 0),
            "sla_breaches": int(self.sla_breaches or 0),
            "on_time_resolutions": int(self.on_time_resolutions or 0),
            "avg_resolution_minutes": round(float(self.avg_resolution_minutes or 0.0), 2),
        }
