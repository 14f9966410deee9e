from escrowcourt.extensions import db
from escrowcourt.utils.clock import utc_now


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(160), nullable=True, unique=True)

    # buyer | seller | moderator | senior_mod | admin
    role = db.Column(db.String(32), nullable=False, default="buyer", index=True)
    trust_level = db.Column(db.Integer, nullable=False, default=50)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self):
        return {
            "id": int(self.id),
            "name": self.name or "",
            "email": self.email or "",
            "role": self.role or "buyer",
            "trust_level": int(self.trust_level if self.trust_level is not None else 50),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
