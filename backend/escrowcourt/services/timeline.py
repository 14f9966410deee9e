from __future__ import annotations

import json

from escrowcourt.extensions import db
from escrowcourt.models import ComplaintTimelineEvent
from escrowcourt.models.statuses import ActorRole, TimelineEventType
from escrowcourt.utils.clock import utc_now


class TimelineService:
    """Append-only history of a complaint. Corrections are new events."""

    def __init__(self, *, clock=utc_now):
        self.clock = clock

    def add_event(
        self,
        ticket_id: int,
        event_type: TimelineEventType,
        *,
        actor_id: int | None = None,
        actor_role: ActorRole | str = ActorRole.SYSTEM,
        description: str = "",
        meta: dict | None = None,
    ) -> ComplaintTimelineEvent:
        role = actor_role.value if isinstance(actor_role, ActorRole) else str(actor_role or "system")
        row = ComplaintTimelineEvent(
            ticket_id=int(ticket_id),
            event_type=TimelineEventType(event_type).value,
            actor_id=int(actor_id) if actor_id is not None else None,
            actor_role=role,
            description=(description or "")[:500],
            meta=json.dumps(meta or {}, default=str),
            created_at=self.clock(),
        )
        db.session.add(row)
        return row

    def get_timeline(self, ticket_id: int) -> list[dict]:
        rows = (
            ComplaintTimelineEvent.query.filter_by(ticket_id=int(ticket_id))
            .order_by(ComplaintTimelineEvent.created_at.desc(), ComplaintTimelineEvent.id.desc())
            .all()
        )
        return [r.to_dict() for r in rows]
