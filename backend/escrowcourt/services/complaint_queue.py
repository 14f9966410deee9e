from __future__ import annotations

import uuid
from datetime import datetime, time
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app
from sqlalchemy import case, func, select, update

from escrowcourt.errors import NotFoundError, StateConflictError, ValidationError
from escrowcourt.extensions import db
from escrowcourt.models import ComplaintQueueEntry, ComplaintTicket, User
from escrowcourt.models.statuses import ActorRole, EscalationLevel, QueueStatus, TicketStatus, TimelineEventType
from escrowcourt.services.complaint_states import assert_transition
from escrowcourt.services.moderator_stats import ModeratorStatsRecorder
from escrowcourt.services.timeline import TimelineService
from escrowcourt.utils.clock import hours_between, minutes_between, utc_now
from escrowcourt.utils.unit_of_work import conditional_update, unit_of_work

DEFAULT_WEIGHTS = {
    "order_value": 0.30,
    "buyer_trust": 0.15,
    "seller_trust": 0.15,
    "ticket_age": 0.25,
    "is_high_value": 0.15,
}

OPEN_QUEUE_STATUSES = (QueueStatus.IN_QUEUE.value, QueueStatus.ASSIGNED.value, QueueStatus.IN_PROGRESS.value)
WORKING_STATUSES = (QueueStatus.ASSIGNED.value, QueueStatus.IN_PROGRESS.value)

SORT_FIELDS = {
    "queue_priority": ComplaintQueueEntry.queue_priority,
    "added_to_queue_at": ComplaintQueueEntry.added_to_queue_at,
    "order_value": ComplaintQueueEntry.order_value,
    "ticket_age": ComplaintQueueEntry.ticket_age,
}


def _clamp(value, low, high):
    return max(low, min(high, value))


class ComplaintQueueScheduler:
    """Priority queue of complaints waiting for a moderator.

    A claim is a single conditional UPDATE, so two moderators picking at the
    same moment can never receive the same ticket.
    """

    def __init__(
        self,
        *,
        timeline: TimelineService,
        stats: ModeratorStatsRecorder,
        clock=utc_now,
        weights: dict | None = None,
        high_value_threshold: int = 1_000_000,
        age_cap_hours: int = 72,
        escalation_multiplier: float = 1.2,
        default_pick_count: int = 5,
        max_pick_count: int = 10,
        claim_retries: int = 5,
        estimated_resolution_minutes: int = 120,
    ):
        self.timeline = timeline
        self.stats = stats
        self.clock = clock
        self.weights = dict(DEFAULT_WEIGHTS)
        self.weights.update(weights or {})
        self.high_value_threshold = int(high_value_threshold)
        self.age_cap_hours = float(age_cap_hours)
        self.escalation_multiplier = float(escalation_multiplier)
        self.default_pick_count = int(default_pick_count)
        self.max_pick_count = int(max_pick_count)
        self.claim_retries = int(claim_retries)
        self.estimated_resolution_minutes = int(estimated_resolution_minutes)

    # -------------------------
    # Scoring
    # -------------------------
    def is_high_value(self, order_value: int) -> bool:
        return int(order_value or 0) >= self.high_value_threshold

    def calculate_priority_score(
        self,
        *,
        order_value: int,
        buyer_trust: int,
        seller_trust: int,
        ticket_age_hours: float,
        is_high_value: bool,
        is_escalated: bool,
    ) -> int:
        """Weighted 0..100 score, rounded half-up to a whole number.

        Bigger orders, trusted buyers, untrusted sellers and older tickets rank higher.
        Equal scores fall back to filing order when picking.
        """
        w = self.weights
        value_factor = _clamp(float(order_value or 0) / float(self.high_value_threshold or 1), 0.0, 1.0)
        buyer_factor = _clamp(float(buyer_trust), 0.0, 100.0) / 100.0
        seller_factor = (100.0 - _clamp(float(seller_trust), 0.0, 100.0)) / 100.0
        age_factor = _clamp(float(ticket_age_hours or 0.0) / self.age_cap_hours, 0.0, 1.0)

        score = (
            value_factor * w["order_value"]
            + buyer_factor * w["buyer_trust"]
            + seller_factor * w["seller_trust"]
            + age_factor * w["ticket_age"]
            + (w["is_high_value"] if is_high_value else 0.0)
        )
        if is_escalated:
            score *= self.escalation_multiplier

        # Strip float noise first so 22.5 never lands on 22.4999...
        capped = round(min(score * 100.0, 100.0), 6)
        return int(Decimal(repr(capped)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def _entry_escalated(self, entry: ComplaintQueueEntry, ticket: ComplaintTicket | None) -> bool:
        if entry.is_escalated:
            return True
        return bool(ticket and ticket.escalation_level != EscalationLevel.MODERATOR.value)

    def score_entry(self, entry: ComplaintQueueEntry, ticket: ComplaintTicket | None, now) -> tuple[int, float]:
        age = round(hours_between(entry.added_to_queue_at or now, now), 2)
        score = self.calculate_priority_score(
            order_value=int(entry.order_value or 0),
            buyer_trust=int(entry.buyer_trust_level),
            seller_trust=int(entry.seller_trust_level),
            ticket_age_hours=age,
            is_high_value=bool(entry.is_high_value),
            is_escalated=self._entry_escalated(entry, ticket),
        )
        return score, age

    # -------------------------
    # Queue membership
    # -------------------------
    def enqueue(self, ticket: ComplaintTicket, *, now=None) -> ComplaintQueueEntry:
        """Create the queue entry for a freshly filed ticket (inside the caller's unit of work)."""
        now = now or self.clock()
        high_value = self.is_high_value(ticket.order_value)
        score = self.calculate_priority_score(
            order_value=int(ticket.order_value or 0),
            buyer_trust=int(ticket.buyer_trust_level),
            seller_trust=int(ticket.seller_trust_level),
            ticket_age_hours=0.0,
            is_high_value=high_value,
            is_escalated=ticket.escalation_level != EscalationLevel.MODERATOR.value,
        )
        entry = ComplaintQueueEntry(
            ticket_id=ticket.id,
            queue_priority=score,
            estimated_resolution_minutes=self.estimated_resolution_minutes,
            added_to_queue_at=now,
            status=QueueStatus.IN_QUEUE.value,
            order_value=int(ticket.order_value or 0),
            buyer_trust_level=int(ticket.buyer_trust_level),
            seller_trust_level=int(ticket.seller_trust_level),
            ticket_age=0.0,
            is_high_value=high_value,
            is_escalated=False,
        )
        ticket.calculated_priority = score
        db.session.add(entry)
        db.session.flush()
        self.timeline.add_event(
            ticket.id,
            TimelineEventType.ADDED_TO_QUEUE,
            actor_role=ActorRole.SYSTEM,
            description=f"Added to moderation queue with priority {score}",
            meta={"queue_entry_id": int(entry.id), "priority": score, "is_high_value": high_value},
        )
        return entry

    def entry_for_ticket(self, ticket_id: int) -> ComplaintQueueEntry | None:
        return ComplaintQueueEntry.query.filter_by(ticket_id=int(ticket_id)).first()

    def mark_in_progress(self, ticket_id: int, moderator_id: int | None = None, *, now=None) -> bool:
        """First moderator action on a ticket. A waiting entry is taken by that moderator."""
        entry = self.entry_for_ticket(ticket_id)
        if entry is None:
            return False
        values = {
            "status": QueueStatus.IN_PROGRESS.value,
            "picked_up_at": func.coalesce(ComplaintQueueEntry.picked_up_at, now or self.clock()),
        }
        if moderator_id is not None:
            values["assigned_moderator_id"] = func.coalesce(ComplaintQueueEntry.assigned_moderator_id, int(moderator_id))
        return conditional_update(
            ComplaintQueueEntry,
            entry.id,
            [ComplaintQueueEntry.status.in_((QueueStatus.IN_QUEUE.value, QueueStatus.ASSIGNED.value))],
            values,
        )

    def mark_completed(self, ticket_id: int, *, now=None) -> bool:
        entry = self.entry_for_ticket(ticket_id)
        if entry is None:
            return False
        return conditional_update(
            ComplaintQueueEntry,
            entry.id,
            [ComplaintQueueEntry.status != QueueStatus.COMPLETED.value],
            {"status": QueueStatus.COMPLETED.value, "completed_at": now or self.clock()},
        )

    # -------------------------
    # Assignment
    # -------------------------
    def _assign_ticket(self, ticket_id: int, moderator_id: int, *, actor_id, actor_role, now, via: str) -> ComplaintTicket:
        ticket = db.session.get(ComplaintTicket, int(ticket_id))
        if ticket is None:
            raise NotFoundError("Ticket not found", ticket_id=int(ticket_id))
        current = assert_transition(ticket, TicketStatus.IN_REVIEW)
        code = ticket.ticket_code
        previous = ticket.assigned_moderator_id

        changed = conditional_update(
            ComplaintTicket,
            ticket.id,
            [ComplaintTicket.status == current.value],
            {
                "status": TicketStatus.IN_REVIEW.value,
                "assigned_moderator_id": int(moderator_id),
                "first_response_at": func.coalesce(ComplaintTicket.first_response_at, now),
                "updated_at": now,
            },
        )
        if not changed:
            raise StateConflictError(f"Ticket {code} changed while being assigned", ticket_code=code)

        self.timeline.add_event(
            ticket_id,
            TimelineEventType.MODERATOR_ASSIGNED,
            actor_id=actor_id,
            actor_role=actor_role,
            description=f"Assigned to moderator #{int(moderator_id)}",
            meta={
                "moderator_id": int(moderator_id),
                "previous_moderator_id": previous,
                "from_status": current.value,
                "via": via,
            },
        )
        self.stats.record_assignment(int(moderator_id))
        return ticket

    def assign_ticket(self, ticket_id: int, moderator_id: int, *, actor_id=None, actor_role=ActorRole.SYSTEM, via="manual") -> ComplaintQueueEntry:
        """Hand the entry to ``moderator_id``. Work already in progress stays InProgress."""
        now = self.clock()
        with unit_of_work():
            entry = self.entry_for_ticket(ticket_id)
            if entry is None:
                raise NotFoundError("Queue entry not found", ticket_id=int(ticket_id))
            claimed = conditional_update(
                ComplaintQueueEntry,
                entry.id,
                [ComplaintQueueEntry.status != QueueStatus.COMPLETED.value],
                {
                    "status": case(
                        (ComplaintQueueEntry.status == QueueStatus.IN_PROGRESS.value, QueueStatus.IN_PROGRESS.value),
                        else_=QueueStatus.ASSIGNED.value,
                    ),
                    "assigned_moderator_id": int(moderator_id),
                    "picked_up_at": func.coalesce(ComplaintQueueEntry.picked_up_at, now),
                },
            )
            if not claimed:
                raise StateConflictError("Queue entry already completed", ticket_id=int(ticket_id))
            self._assign_ticket(ticket_id, moderator_id, actor_id=actor_id, actor_role=actor_role, now=now, via=via)
        current_app.logger.info("complaint assigned ticket=%s moderator=%s via=%s", ticket_id, moderator_id, via)
        return entry

    def _claim_one(self, moderator_id: int, now) -> ComplaintQueueEntry | None:
        for _ in range(self.claim_retries):
            candidate = (
                select(ComplaintQueueEntry.id)
                .where(
                    ComplaintQueueEntry.status == QueueStatus.IN_QUEUE.value,
                    ComplaintQueueEntry.assigned_moderator_id.is_(None),
                )
                .order_by(
                    ComplaintQueueEntry.queue_priority.desc(),
                    ComplaintQueueEntry.added_to_queue_at.asc(),
                    ComplaintQueueEntry.id.asc(),
                )
                .limit(1)
                .with_for_update(skip_locked=True)
                .scalar_subquery()
            )
            token = str(uuid.uuid4())
            result = db.session.execute(
                update(ComplaintQueueEntry)
                .where(
                    ComplaintQueueEntry.id == candidate,
                    ComplaintQueueEntry.status == QueueStatus.IN_QUEUE.value,
                    ComplaintQueueEntry.assigned_moderator_id.is_(None),
                )
                .values(
                    status=QueueStatus.ASSIGNED.value,
                    assigned_moderator_id=int(moderator_id),
                    picked_up_at=now,
                    claim_token=token,
                )
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) == 1:
                return (
                    ComplaintQueueEntry.query.filter_by(claim_token=token)
                    .populate_existing()
                    .one()
                )
            waiting = (
                db.session.query(ComplaintQueueEntry.id)
                .filter(
                    ComplaintQueueEntry.status == QueueStatus.IN_QUEUE.value,
                    ComplaintQueueEntry.assigned_moderator_id.is_(None),
                )
                .first()
            )
            if waiting is None:
                return None
        return None

    def pick_next_from_queue(self, moderator_id: int) -> ComplaintQueueEntry | None:
        """Claim the highest-priority waiting ticket for ``moderator_id``, or None when the queue is empty."""
        now = self.clock()
        with unit_of_work():
            entry = self._claim_one(int(moderator_id), now)
            if entry is None:
                return None
            self._assign_ticket(
                entry.ticket_id,
                moderator_id,
                actor_id=int(moderator_id),
                actor_role=ActorRole.MODERATOR,
                now=now,
                via="pick",
            )
        current_app.logger.info("queue pick moderator=%s ticket=%s", moderator_id, entry.ticket_id)
        return entry

    def pick_multiple_from_queue(self, moderator_id: int, count: int | None = None) -> list[ComplaintQueueEntry]:
        wanted = self.default_pick_count if count is None else int(count)
        if wanted <= 0:
            raise ValidationError("count must be positive", count=wanted)
        wanted = min(wanted, self.max_pick_count)
        picked = []
        for _ in range(wanted):
            entry = self.pick_next_from_queue(moderator_id)
            if entry is None:
                break
            picked.append(entry)
        return picked

    def moderator_ids(self) -> list[int]:
        rows = (
            db.session.query(User.id)
            .filter(User.role == ActorRole.MODERATOR.value)
            .order_by(User.id.asc())
            .all()
        )
        return [int(r[0]) for r in rows]

    def _working_counts(self) -> dict:
        rows = (
            db.session.query(
                ComplaintQueueEntry.assigned_moderator_id,
                ComplaintQueueEntry.status,
                func.count(ComplaintQueueEntry.id),
            )
            .filter(
                ComplaintQueueEntry.assigned_moderator_id.isnot(None),
                ComplaintQueueEntry.status.in_(WORKING_STATUSES),
            )
            .group_by(ComplaintQueueEntry.assigned_moderator_id, ComplaintQueueEntry.status)
            .all()
        )
        counts = {}
        for moderator_id, status, n in rows:
            counts.setdefault(int(moderator_id), {})[status] = int(n)
        return counts

    def auto_assign_to_least_busy(self, ticket_id: int) -> ComplaintQueueEntry | None:
        """Give the ticket to the moderator with the fewest assigned or in-progress entries."""
        moderators = self.moderator_ids()
        if not moderators:
            current_app.logger.warning("auto-assign skipped ticket=%s: no moderators", ticket_id)
            return None
        counts = self._working_counts()
        chosen = min(moderators, key=lambda m: sum(counts.get(m, {}).values()))
        return self.assign_ticket(ticket_id, chosen, actor_id=None, actor_role=ActorRole.SYSTEM, via="auto")

    # -------------------------
    # Periodic refresh
    # -------------------------
    def refresh_priorities(self) -> dict:
        """Recompute age and priority for every entry that is not completed."""
        now = self.clock()
        checked = 0
        updated = 0
        with unit_of_work():
            entries = (
                ComplaintQueueEntry.query.filter(ComplaintQueueEntry.status.in_(OPEN_QUEUE_STATUSES))
                .order_by(ComplaintQueueEntry.id.asc())
                .all()
            )
            for entry in entries:
                checked += 1
                ticket = entry.ticket
                score, age = self.score_entry(entry, ticket, now)
                if score == int(entry.queue_priority or 0) and age == float(entry.ticket_age or 0.0):
                    continue
                entry.queue_priority = score
                entry.ticket_age = age
                if ticket is not None:
                    ticket.calculated_priority = score
                updated += 1
        current_app.logger.info("queue priorities refreshed checked=%s updated=%s", checked, updated)
        return {"ok": True, "checked": checked, "updated": updated, "ts": now.isoformat()}

    def escalate(self, ticket_id: int) -> None:
        entry = self.entry_for_ticket(ticket_id)
        if entry is None:
            return
        entry.is_escalated = True
        score, age = self.score_entry(entry, entry.ticket, self.clock())
        entry.queue_priority = score
        entry.ticket_age = age
        if entry.ticket is not None:
            entry.ticket.calculated_priority = score

    # -------------------------
    # Reads
    # -------------------------
    def get_queue(
        self,
        *,
        status: str | None = None,
        is_high_value: bool | None = None,
        assigned_moderator_id: int | None = None,
        sort_by: str = "queue_priority",
        sort_order: str = "desc",
        limit: int = 50,
        skip: int = 0,
    ) -> dict:
        q = ComplaintQueueEntry.query
        if status:
            q = q.filter(ComplaintQueueEntry.status == QueueStatus(status).value)
        else:
            q = q.filter(ComplaintQueueEntry.status.in_(OPEN_QUEUE_STATUSES))
        if is_high_value is not None:
            q = q.filter(ComplaintQueueEntry.is_high_value == bool(is_high_value))
        if assigned_moderator_id is not None:
            q = q.filter(ComplaintQueueEntry.assigned_moderator_id == int(assigned_moderator_id))

        total = q.count()
        column = SORT_FIELDS.get(sort_by)
        if column is None:
            raise ValidationError(f"Cannot sort queue by {sort_by!r}")
        primary = column.asc() if (sort_order or "").lower() == "asc" else column.desc()
        rows = (
            q.order_by(primary, ComplaintQueueEntry.added_to_queue_at.asc(), ComplaintQueueEntry.id.asc())
            .offset(max(int(skip), 0))
            .limit(_clamp(int(limit), 1, 200))
            .all()
        )
        return {"items": [r.to_dict() for r in rows], "total": int(total)}

    def _start_of_day(self, now) -> datetime:
        return datetime.combine(now.date(), time.min)

    def get_moderator_workload(self) -> list[dict]:
        now = self.clock()
        counts = self._working_counts()
        done_rows = (
            db.session.query(ComplaintQueueEntry.assigned_moderator_id, func.count(ComplaintQueueEntry.id))
            .filter(
                ComplaintQueueEntry.status == QueueStatus.COMPLETED.value,
                ComplaintQueueEntry.completed_at >= self._start_of_day(now),
            )
            .group_by(ComplaintQueueEntry.assigned_moderator_id)
            .all()
        )
        done = {int(m): int(n) for m, n in done_rows if m is not None}

        out = []
        for moderator in User.query.filter(User.role == ActorRole.MODERATOR.value).order_by(User.id.asc()).all():
            mine = counts.get(int(moderator.id), {})
            out.append({
                "moderator_id": int(moderator.id),
                "moderator_name": moderator.name or "",
                "assigned_count": int(mine.get(QueueStatus.ASSIGNED.value, 0)),
                "in_progress_count": int(mine.get(QueueStatus.IN_PROGRESS.value, 0)),
                "completed_today_count": done.get(int(moderator.id), 0),
            })
        return out

    def get_queue_stats(self) -> dict:
        now = self.clock()
        by_status = dict(
            db.session.query(ComplaintQueueEntry.status, func.count(ComplaintQueueEntry.id))
            .group_by(ComplaintQueueEntry.status)
            .all()
        )
        completed_today = (
            ComplaintQueueEntry.query.filter(
                ComplaintQueueEntry.status == QueueStatus.COMPLETED.value,
                ComplaintQueueEntry.completed_at >= self._start_of_day(now),
            ).count()
        )
        waiting = ComplaintQueueEntry.query.filter(ComplaintQueueEntry.status == QueueStatus.IN_QUEUE.value).all()
        avg_wait = 0.0
        if waiting:
            avg_wait = sum(minutes_between(e.added_to_queue_at, now) for e in waiting) / len(waiting)
        return {
            "total_in_queue": int(by_status.get(QueueStatus.IN_QUEUE.value, 0)),
            "total_assigned": int(by_status.get(QueueStatus.ASSIGNED.value, 0)),
            "total_in_progress": int(by_status.get(QueueStatus.IN_PROGRESS.value, 0)),
            "total_completed_today": int(completed_today),
            "avg_wait_time_minutes": round(avg_wait, 1),
            "high_value_count": sum(1 for e in waiting if e.is_high_value),
        }
