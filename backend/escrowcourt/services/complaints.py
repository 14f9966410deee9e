from __future__ import annotations

import calendar
import json
import secrets
import string
from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from escrowcourt.errors import (
    EscrowCourtError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
    WindowExpiredError,
)
from escrowcourt.extensions import db
from escrowcourt.models import (
    AuditLog,
    ComplaintEvidence,
    ComplaintInternalNote,
    ComplaintTicket,
    Order,
    OrderLine,
    User,
)
from escrowcourt.models.statuses import (
    STAFF_ROLES,
    ActorRole,
    AppealDecision,
    EscalationLevel,
    EvidenceParty,
    EvidenceType,
    HoldStatus,
    ItemStatus,
    OrderStatus,
    ResolutionType,
    SellerResponseStatus,
    TicketStatus,
    TimelineEventType,
)
from escrowcourt.services.complaint_queue import ComplaintQueueScheduler
from escrowcourt.services.complaint_states import (
    ACTIVE_STATUSES,
    CLOSABLE_STATUSES,
    assert_transition,
    is_active,
    values,
)
from escrowcourt.services.disbursement import DisbursementProcessor
from escrowcourt.services.moderator_stats import ModeratorStatsRecorder
from escrowcourt.services.timeline import TimelineService
from escrowcourt.utils.clock import hours_between, minutes_between, utc_now
from escrowcourt.utils.unit_of_work import conditional_update, unit_of_work

ELIGIBLE_ORDER_STATUSES = (OrderStatus.PAID.value, OrderStatus.DISPUTED.value)
REFUND_TYPES = (ResolutionType.FULL_REFUND, ResolutionType.PARTIAL_REFUND)
SELLER_OFFER_TYPES = (ResolutionType.FULL_REFUND, ResolutionType.PARTIAL_REFUND, ResolutionType.REPLACE)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _base36(n: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if n <= 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return "".join(reversed(out))


def generate_ticket_code(now) -> str:
    millis = calendar.timegm(now.utctimetuple()) * 1000 + now.microsecond // 1000
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"TKT-{_base36(millis)}-{suffix}"


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {label} {value!r} (expected one of: {allowed})") from None


def _role_value(role) -> str:
    return role.value if isinstance(role, ActorRole) else str(role or "")


class ComplaintService:
    """Complaint lifecycle: filing, moderation, decisions and appeals.

    Each operation is one unit of work; money only moves through the
    disbursement processor.
    """

    def __init__(
        self,
        *,
        processor: DisbursementProcessor,
        queue: ComplaintQueueScheduler,
        timeline: TimelineService,
        stats: ModeratorStatsRecorder,
        clock=utc_now,
        complaint_window_hours: int = 72,
        appeal_window_hours: int = 72,
        seller_response_hours: int = 48,
        sla_resolution_minutes: int = 2880,
        default_trust_level: int = 50,
        auto_assign: bool = False,
    ):
        self.processor = processor
        self.queue = queue
        self.timeline = timeline
        self.stats = stats
        self.clock = clock
        self.complaint_window_hours = int(complaint_window_hours)
        self.appeal_window_hours = int(appeal_window_hours)
        self.seller_response_hours = int(seller_response_hours)
        self.sla_resolution_minutes = int(sla_resolution_minutes)
        self.default_trust_level = int(default_trust_level)
        self.auto_assign = bool(auto_assign)

    # -------------------------
    # Lookups
    # -------------------------
    def _ticket(self, ticket_id: int) -> ComplaintTicket:
        ticket = db.session.get(ComplaintTicket, int(ticket_id))
        if ticket is None:
            raise NotFoundError("Ticket not found", ticket_id=int(ticket_id))
        return ticket

    def _active_ticket_for_line(self, order_line_id: int) -> ComplaintTicket | None:
        return (
            ComplaintTicket.query.filter(
                ComplaintTicket.order_line_id == int(order_line_id),
                ComplaintTicket.status.in_(values(ACTIVE_STATUSES)),
            )
            .order_by(ComplaintTicket.id.desc())
            .first()
        )

    def _trust(self, user: User | None) -> int:
        if user is None or user.trust_level is None:
            return self.default_trust_level
        return max(0, min(100, int(user.trust_level)))

    def _party_of(self, ticket: ComplaintTicket, user_id: int) -> EvidenceParty:
        if int(user_id) == int(ticket.customer_id):
            return EvidenceParty.BUYER
        if int(user_id) == int(ticket.seller_id):
            return EvidenceParty.SELLER
        raise PermissionDeniedError("Only the buyer or seller of this order can do that", ticket_code=ticket.ticket_code)

    def _require_staff(self, user_id: int) -> User:
        user = db.session.get(User, int(user_id))
        if user is None:
            raise NotFoundError("Moderator not found", user_id=int(user_id))
        if user.role not in STAFF_ROLES:
            raise PermissionDeniedError("User is not a moderator", user_id=int(user_id))
        return user

    # -------------------------
    # Filing
    # -------------------------
    def can_file_complaint(self, order_line_id: int, buyer_id: int | None = None) -> dict:
        """Dry run of the filing checks.

        The window is inclusive: at exactly ``complaint_window_hours`` after the hold
        a complaint can still be filed (with ``hours_remaining`` 0.0), and escrow release
        only starts once that point has passed.
        """
        now = self.clock()
        line = db.session.get(OrderLine, int(order_line_id))
        if line is None:
            return {"can_file": False, "reason": "Order item not found"}
        order = line.order
        if buyer_id is not None and int(order.buyer_id) != int(buyer_id):
            return {"can_file": False, "reason": "Order item does not belong to you"}
        if order.status not in ELIGIBLE_ORDER_STATUSES:
            return {"can_file": False, "reason": f"Order is {order.status}"}
        if line.hold_status != HoldStatus.HOLDING.value or line.hold_at is None:
            return {"can_file": False, "reason": "Order item is no longer held in escrow"}
        elapsed = hours_between(line.hold_at, now)
        if elapsed > self.complaint_window_hours:
            return {"can_file": False, "reason": "Complaint window has expired", "hours_remaining": 0}
        existing = self._active_ticket_for_line(line.id)
        if existing is not None:
            return {"can_file": False, "reason": f"Ticket {existing.ticket_code} is already open for this item"}
        return {"can_file": True, "hours_remaining": max(0.0, self.complaint_window_hours - elapsed)}

    def create_complaint(
        self,
        buyer_id: int,
        order_line_id: int,
        title: str,
        content: str,
        *,
        category: str | None = None,
        subcategory: str | None = None,
        evidence: list[dict] | None = None,
    ) -> ComplaintTicket:
        now = self.clock()
        title = (title or "").strip()
        content = (content or "").strip()
        if not title or not content:
            raise ValidationError("Title and content are required")

        line = db.session.get(OrderLine, int(order_line_id))
        if line is None:
            raise NotFoundError("Order item not found", order_line_id=int(order_line_id))
        order = line.order
        if int(order.buyer_id) != int(buyer_id):
            raise PermissionDeniedError("Order item does not belong to you", order_line_id=int(order_line_id))
        if order.status not in ELIGIBLE_ORDER_STATUSES:
            raise StateConflictError(f"Order {order.order_code} is {order.status} and cannot be disputed")
        if line.hold_status != HoldStatus.HOLDING.value or line.hold_at is None:
            raise StateConflictError("Order item is no longer held in escrow", order_line_id=int(line.id))
        if hours_between(line.hold_at, now) > self.complaint_window_hours:
            raise WindowExpiredError(
                f"Complaint window of {self.complaint_window_hours}h has expired",
                order_line_id=int(line.id),
            )
        existing = self._active_ticket_for_line(line.id)
        if existing is not None:
            raise StateConflictError(
                f"Ticket {existing.ticket_code} is already open for this item",
                ticket_code=existing.ticket_code,
            )

        buyer = db.session.get(User, int(buyer_id))
        seller = db.session.get(User, int(line.seller_id))
        line_id = int(line.id)
        order_id = int(order.id)
        seller_id = int(line.seller_id)
        snapshot = {
            "order_code": order.order_code,
            "product_title": line.product_title,
            "quantity": int(line.quantity or 0),
            "unit_price": int(line.unit_price or 0),
            "hold_amount": int(line.hold_amount or 0),
            "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        }

        try:
            with unit_of_work():
                if not conditional_update(
                    OrderLine,
                    line_id,
                    [
                        OrderLine.hold_status == HoldStatus.HOLDING.value,
                        OrderLine.item_status != ItemStatus.DISPUTED.value,
                    ],
                    {"item_status": ItemStatus.DISPUTED.value, "updated_at": now},
                ):
                    raise StateConflictError("Order item was settled or disputed concurrently", order_line_id=line_id)
                conditional_update(
                    Order,
                    order_id,
                    [Order.status.in_(ELIGIBLE_ORDER_STATUSES)],
                    {"status": OrderStatus.DISPUTED.value, "updated_at": now},
                )

                ticket = ComplaintTicket(
                    ticket_code=generate_ticket_code(now),
                    customer_id=int(buyer_id),
                    seller_id=seller_id,
                    order_id=order_id,
                    order_line_id=line_id,
                    title=title[:200],
                    content=content,
                    category=category,
                    subcategory=subcategory,
                    status=TicketStatus.OPEN.value,
                    resolution_type=ResolutionType.NONE.value,
                    seller_response_deadline=now + timedelta(hours=self.seller_response_hours),
                    order_value=snapshot["hold_amount"],
                    buyer_trust_level=self._trust(buyer),
                    seller_trust_level=self._trust(seller),
                    order_snapshot=json.dumps(snapshot),
                    escalation_level=EscalationLevel.MODERATOR.value,
                    sla_breached=False,
                    created_at=now,
                    updated_at=now,
                )
                db.session.add(ticket)
                db.session.flush()

                self.timeline.add_event(
                    ticket.id,
                    TimelineEventType.CREATED,
                    actor_id=int(buyer_id),
                    actor_role=ActorRole.BUYER,
                    description=f"Complaint {ticket.ticket_code} filed",
                    meta={"order_line_id": line_id, "order_value": ticket.order_value, "category": category},
                )
                for item in evidence or []:
                    self._attach_evidence(ticket, int(buyer_id), EvidenceParty.BUYER, item, now)
                self.queue.enqueue(ticket, now=now)
        except IntegrityError:
            raise StateConflictError("An active ticket already exists for this item", order_line_id=line_id) from None

        current_app.logger.info(
            "complaint filed ticket=%s line=%s buyer=%s priority=%s",
            ticket.ticket_code, line_id, buyer_id, ticket.calculated_priority,
        )

        if self.auto_assign:
            self._hand_to_moderator(ticket.id)
        return ticket

    # -------------------------
    # Evidence
    # -------------------------
    def _attach_evidence(self, ticket: ComplaintTicket, user_id: int, party: EvidenceParty, item: dict, now) -> ComplaintEvidence:
        ev_type = _parse_enum(EvidenceType, (item or {}).get("type"), "evidence type")
        url = ((item or {}).get("url") or "").strip()
        if not url:
            raise ValidationError("Evidence url is required")
        row = ComplaintEvidence(
            ticket_id=ticket.id,
            uploaded_by=int(user_id),
            party=party.value,
            type=ev_type.value,
            url=url[:500],
            description=((item or {}).get("description") or "")[:500] or None,
            uploaded_at=now,
        )
        db.session.add(row)
        db.session.flush()
        self.timeline.add_event(
            ticket.id,
            TimelineEventType.EVIDENCE_ADDED,
            actor_id=int(user_id),
            actor_role=party.value,
            description=f"{party.value.capitalize()} added {ev_type.value.lower()} evidence",
            meta={"evidence_id": int(row.id), "type": ev_type.value},
        )
        return row

    def add_evidence(self, ticket_id: int, user_id: int, *, type: str, url: str, description: str | None = None) -> ComplaintEvidence:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        party = self._party_of(ticket, user_id)
        if not is_active(ticket.status):
            raise StateConflictError(
                f"Ticket {ticket.ticket_code} is {ticket.status}; evidence is closed",
                ticket_code=ticket.ticket_code,
            )

        with unit_of_work():
            row = self._attach_evidence(ticket, user_id, party, {"type": type, "url": url, "description": description}, now)
            if ticket.status == TicketStatus.NEED_MORE_INFO.value:
                assert_transition(ticket, TicketStatus.IN_REVIEW)
                if conditional_update(
                    ComplaintTicket,
                    ticket.id,
                    [ComplaintTicket.status == TicketStatus.NEED_MORE_INFO.value],
                    {"status": TicketStatus.IN_REVIEW.value, "updated_at": now},
                ):
                    self.timeline.add_event(
                        ticket.id,
                        TimelineEventType.INFO_PROVIDED,
                        actor_id=int(user_id),
                        actor_role=party.value,
                        description="Requested information provided",
                        meta={"evidence_id": int(row.id), "from_status": TicketStatus.NEED_MORE_INFO.value},
                    )
        return row

    # -------------------------
    # Seller negotiation
    # -------------------------
    def _negotiation_step(self, ticket: ComplaintTicket, allowed) -> SellerResponseStatus:
        """The seller phase only runs while the ticket is Open, before any moderator picks it up."""
        if ticket.status != TicketStatus.OPEN.value:
            raise StateConflictError(
                f"Ticket {ticket.ticket_code} is {ticket.status}; the seller phase is over",
                ticket_code=ticket.ticket_code,
            )
        current = SellerResponseStatus(ticket.seller_response_status or SellerResponseStatus.PENDING.value)
        if current not in allowed:
            raise StateConflictError(
                f"Ticket {ticket.ticket_code} seller response is {current.value}",
                ticket_code=ticket.ticket_code,
                seller_response_status=current.value,
            )
        return current

    def _require_seller(self, ticket: ComplaintTicket, seller_id: int) -> None:
        if int(seller_id) != int(ticket.seller_id):
            raise PermissionDeniedError("Only the seller of this order can respond", ticket_code=ticket.ticket_code)

    def _require_buyer(self, ticket: ComplaintTicket, buyer_id: int) -> None:
        if int(buyer_id) != int(ticket.customer_id):
            raise PermissionDeniedError("Only the buyer of this order can answer the seller", ticket_code=ticket.ticket_code)

    def _check_seller_deadline(self, ticket: ComplaintTicket, now) -> None:
        if ticket.seller_response_deadline is not None and now > ticket.seller_response_deadline:
            raise WindowExpiredError(
                f"Seller response window for ticket {ticket.ticket_code} has expired",
                ticket_code=ticket.ticket_code,
            )

    def _negotiation_cas(self, ticket_id: int, current: SellerResponseStatus, changes: dict) -> bool:
        return conditional_update(
            ComplaintTicket,
            ticket_id,
            [
                ComplaintTicket.status == TicketStatus.OPEN.value,
                ComplaintTicket.seller_response_status == current.value,
            ],
            changes,
        )

    def _hand_to_moderator(self, ticket_id: int):
        try:
            return self.queue.auto_assign_to_least_busy(ticket_id)
        except EscrowCourtError as exc:
            current_app.logger.warning("moderator hand-off failed ticket=%s: %s", ticket_id, exc)
            return None

    def submit_seller_response(self, ticket_id: int, seller_id: int, response: str, *, evidence: list[dict] | None = None) -> ComplaintTicket:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_seller(ticket, seller_id)
        response = (response or "").strip()
        if not response:
            raise ValidationError("A response is required")
        current = self._negotiation_step(ticket, (SellerResponseStatus.PENDING,))
        self._check_seller_deadline(ticket, now)

        code = ticket.ticket_code
        with unit_of_work():
            if not self._negotiation_cas(
                ticket.id,
                current,
                {
                    "seller_response_status": SellerResponseStatus.RESPONDED.value,
                    "seller_response": response,
                    "seller_responded_at": now,
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.SELLER_RESPONDED,
                actor_id=int(seller_id),
                actor_role=ActorRole.SELLER,
                description="Seller responded to the complaint",
                meta={"response": response},
            )
            for item in evidence or []:
                self._attach_evidence(ticket, int(seller_id), EvidenceParty.SELLER, item, now)

        current_app.logger.info("seller responded ticket=%s seller=%s", code, seller_id)
        return self._ticket(ticket_id)

    def propose_resolution(
        self,
        ticket_id: int,
        seller_id: int,
        resolution_type: str,
        refund_amount: int | None = None,
        note: str = "",
    ) -> ComplaintTicket:
        """Seller offers a settlement; the buyer then accepts or rejects it."""
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_seller(ticket, seller_id)
        rtype = _parse_enum(ResolutionType, resolution_type, "resolution type")
        if rtype not in SELLER_OFFER_TYPES:
            raise ValidationError("A seller can only offer a refund or a replacement", resolution_type=rtype.value)
        current = self._negotiation_step(ticket, (SellerResponseStatus.PENDING, SellerResponseStatus.RESPONDED))
        if current == SellerResponseStatus.PENDING:
            self._check_seller_deadline(ticket, now)

        line = db.session.get(OrderLine, int(ticket.order_line_id))
        if line is None:
            raise NotFoundError("Order item not found", order_line_id=int(ticket.order_line_id))
        amount = self._resolve_amount(rtype, int(line.hold_amount or 0), refund_amount)

        code = ticket.ticket_code
        note = (note or "").strip()
        with unit_of_work():
            if not self._negotiation_cas(
                ticket.id,
                current,
                {
                    "seller_response_status": SellerResponseStatus.PROPOSED.value,
                    "seller_proposed_resolution": rtype.value,
                    "seller_proposed_refund_amount": amount,
                    "seller_response": func.coalesce(ComplaintTicket.seller_response, note or None),
                    "seller_responded_at": func.coalesce(ComplaintTicket.seller_responded_at, now),
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.SELLER_PROPOSED,
                actor_id=int(seller_id),
                actor_role=ActorRole.SELLER,
                description=f"Seller offered {rtype.value}",
                meta={"resolution_type": rtype.value, "refund_amount": amount, "note": note},
            )

        current_app.logger.info("seller proposal ticket=%s type=%s amount=%s", code, rtype.value, amount)
        return self._ticket(ticket_id)

    def accept_seller_response(self, ticket_id: int, buyer_id: int) -> ComplaintTicket:
        """Buyer takes the seller's offer. The ticket is settled and closed with no appeal."""
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_buyer(ticket, buyer_id)
        current = self._negotiation_step(ticket, (SellerResponseStatus.PROPOSED,))
        assert_transition(ticket, TicketStatus.RESOLVED)

        rtype = ResolutionType(ticket.seller_proposed_resolution)
        amount = ticket.seller_proposed_refund_amount
        code = ticket.ticket_code
        line_id = int(ticket.order_line_id)
        order_id = int(ticket.order_id)

        with unit_of_work():
            if not self._negotiation_cas(
                ticket.id,
                current,
                {
                    "status": TicketStatus.RESOLVED.value,
                    "seller_response_status": SellerResponseStatus.ACCEPTED.value,
                    "resolution_type": rtype.value,
                    "refund_amount": amount,
                    "decision_note": "Settled with the seller",
                    "decided_at": now,
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.BUYER_ACCEPTED,
                actor_id=int(buyer_id),
                actor_role=ActorRole.BUYER,
                description=f"Buyer accepted the seller's {rtype.value} offer",
                meta={"resolution_type": rtype.value, "refund_amount": amount},
            )
            if rtype in REFUND_TYPES:
                self._refund_or_fail(ticket, line_id, int(amount), int(buyer_id))
            else:
                self._restore_line(line_id, order_id, now)
            self.queue.mark_completed(ticket.id, now=now)

            settled = self._ticket(ticket_id)
            assert_transition(settled, TicketStatus.CLOSED)
            conditional_update(
                ComplaintTicket,
                ticket_id,
                [ComplaintTicket.status == TicketStatus.RESOLVED.value],
                {"status": TicketStatus.CLOSED.value, "closed_at": now, "updated_at": now},
            )
            self.timeline.add_event(
                ticket_id,
                TimelineEventType.CLOSED,
                actor_role=ActorRole.SYSTEM,
                description="Complaint closed",
                meta={"from_status": TicketStatus.RESOLVED.value, "reason": "Settled with the seller"},
            )

        current_app.logger.info("seller offer accepted ticket=%s type=%s amount=%s", code, rtype.value, amount)
        return self._ticket(ticket_id)

    def reject_seller_response(self, ticket_id: int, buyer_id: int, reason: str) -> ComplaintTicket:
        """Buyer turns the seller down; the ticket goes to a moderator at escalated priority."""
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_buyer(ticket, buyer_id)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejecting the seller needs a reason")
        current = self._negotiation_step(ticket, (SellerResponseStatus.RESPONDED, SellerResponseStatus.PROPOSED))

        code = ticket.ticket_code
        with unit_of_work():
            if not self._negotiation_cas(
                ticket.id,
                current,
                {
                    "seller_response_status": SellerResponseStatus.REJECTED.value,
                    "escalation_level": EscalationLevel.MODERATOR.value,
                    "escalation_reason": reason,
                    "escalated_at": now,
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.BUYER_REJECTED,
                actor_id=int(buyer_id),
                actor_role=ActorRole.BUYER,
                description="Buyer rejected the seller's response",
                meta={"reason": reason, "seller_response_status": current.value},
            )
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.ESCALATED,
                actor_role=ActorRole.SYSTEM,
                description="Escalated to a moderator",
                meta={"reason": reason},
            )
            self.queue.escalate(ticket.id)

        current_app.logger.info("seller response rejected ticket=%s buyer=%s", code, buyer_id)
        self._hand_to_moderator(ticket_id)
        return self._ticket(ticket_id)

    def escalate_seller_timeouts(self, *, limit: int = 500) -> dict:
        """Escalate Open tickets whose seller let the response deadline pass in silence."""
        now = self.clock()
        ids = [
            int(r[0])
            for r in db.session.query(ComplaintTicket.id)
            .filter(
                ComplaintTicket.status == TicketStatus.OPEN.value,
                ComplaintTicket.seller_response_status == SellerResponseStatus.PENDING.value,
                ComplaintTicket.seller_response_deadline.isnot(None),
                ComplaintTicket.seller_response_deadline < now,
            )
            .order_by(ComplaintTicket.seller_response_deadline.asc(), ComplaintTicket.id.asc())
            .limit(int(limit))
            .all()
        ]
        escalated = 0
        assigned = 0
        for ticket_id in ids:
            with unit_of_work():
                if not self._negotiation_cas(
                    ticket_id,
                    SellerResponseStatus.PENDING,
                    {
                        "seller_response_status": SellerResponseStatus.TIMEOUT.value,
                        "escalation_level": EscalationLevel.MODERATOR.value,
                        "escalation_reason": "Seller did not respond in time",
                        "escalated_at": now,
                        "updated_at": now,
                    },
                ):
                    continue
                self.timeline.add_event(
                    ticket_id,
                    TimelineEventType.SELLER_TIMEOUT,
                    actor_role=ActorRole.SYSTEM,
                    description=f"Seller did not respond within {self.seller_response_hours}h",
                )
                self.timeline.add_event(
                    ticket_id,
                    TimelineEventType.ESCALATED,
                    actor_role=ActorRole.SYSTEM,
                    description="Escalated to a moderator",
                    meta={"reason": "seller_timeout"},
                )
                self.queue.escalate(ticket_id)
            escalated += 1
            if self._hand_to_moderator(ticket_id) is not None:
                assigned += 1
        if escalated:
            current_app.logger.warning("seller timeouts escalated=%s assigned=%s", escalated, assigned)
        return {"ok": True, "checked": len(ids), "escalated": escalated, "assigned": assigned, "ts": now.isoformat()}

    # -------------------------
    # Moderation
    # -------------------------
    def assign_to_moderator(self, ticket_id: int, moderator_id: int, *, actor_id: int | None = None, actor_role=ActorRole.ADMIN) -> ComplaintTicket:
        ticket = self._ticket(ticket_id)
        self._require_staff(moderator_id)
        if not is_active(ticket.status):
            raise StateConflictError(
                f"Ticket {ticket.ticket_code} is {ticket.status} and cannot be assigned",
                ticket_code=ticket.ticket_code,
            )
        self.queue.assign_ticket(ticket.id, int(moderator_id), actor_id=actor_id, actor_role=actor_role, via="manual")
        return self._ticket(ticket_id)

    def add_internal_note(self, ticket_id: int, moderator_id: int, content: str) -> ComplaintInternalNote:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_staff(moderator_id)
        if ticket.status == TicketStatus.CLOSED.value:
            raise StateConflictError(f"Ticket {ticket.ticket_code} is closed", ticket_code=ticket.ticket_code)
        content = (content or "").strip()
        if not content:
            raise ValidationError("Note content is required")

        with unit_of_work():
            note = ComplaintInternalNote(ticket_id=ticket.id, author_id=int(moderator_id), content=content, created_at=now)
            db.session.add(note)
            db.session.flush()
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.INTERNAL_NOTE_ADDED,
                actor_id=int(moderator_id),
                actor_role=ActorRole.MODERATOR,
                description="Internal note added",
                meta={"note_id": int(note.id)},
            )
            if is_active(ticket.status):
                self.queue.mark_in_progress(ticket.id, int(moderator_id), now=now)
        return note

    def request_more_info(self, ticket_id: int, moderator_id: int, target_party: str, questions: list[str]) -> ComplaintTicket:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_staff(moderator_id)
        party = _parse_enum(EvidenceParty, target_party, "target party")
        questions = [q.strip() for q in (questions or []) if q and q.strip()]
        if not questions:
            raise ValidationError("At least one question is required")
        current = assert_transition(ticket, TicketStatus.NEED_MORE_INFO)

        with unit_of_work():
            if not conditional_update(
                ComplaintTicket,
                ticket.id,
                [ComplaintTicket.status == current.value],
                {
                    "status": TicketStatus.NEED_MORE_INFO.value,
                    "assigned_moderator_id": func.coalesce(ComplaintTicket.assigned_moderator_id, int(moderator_id)),
                    "first_response_at": func.coalesce(ComplaintTicket.first_response_at, now),
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {ticket.ticket_code} changed concurrently", ticket_code=ticket.ticket_code)
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.INFO_REQUESTED,
                actor_id=int(moderator_id),
                actor_role=ActorRole.MODERATOR,
                description=f"More information requested from the {party.value}",
                meta={"target_party": party.value, "questions": questions, "from_status": current.value},
            )
            self.queue.mark_in_progress(ticket.id, int(moderator_id), now=now)
        return self._ticket(ticket_id)

    # -------------------------
    # Decisions
    # -------------------------
    def _resolve_amount(self, rtype: ResolutionType, hold_amount: int, refund_amount) -> int | None:
        if rtype == ResolutionType.FULL_REFUND:
            return int(hold_amount)
        if rtype == ResolutionType.PARTIAL_REFUND:
            try:
                amount = int(refund_amount)
            except (TypeError, ValueError):
                raise ValidationError("Partial refund needs a whole-number refund amount") from None
            if amount <= 0 or amount > int(hold_amount):
                raise ValidationError(
                    f"Refund amount must be between 1 and {int(hold_amount)}",
                    refund_amount=amount,
                    hold_amount=int(hold_amount),
                )
            return amount
        return None

    def _refund_or_fail(self, ticket: ComplaintTicket, line_id: int, amount: int, actor_id: int) -> None:
        res = self.processor.refund(line_id, amount, ticket_id=ticket.id)
        if not res.get("success"):
            raise StateConflictError(
                f"Refund for ticket {ticket.ticket_code} failed: {res.get('message')}",
                ticket_code=ticket.ticket_code,
                reason=res.get("code"),
            )
        self.timeline.add_event(
            ticket.id,
            TimelineEventType.REFUND_PROCESSED,
            actor_id=actor_id,
            actor_role=ActorRole.SYSTEM,
            description=f"Refunded {amount} to buyer",
            meta={"order_line_id": line_id, "refund_amount": amount, "remainder": res.get("remainder", 0)},
        )

    def _restore_line(self, line_id: int, order_id: int, now) -> bool:
        """Send a disputed line back to the normal release path."""
        restored = conditional_update(
            OrderLine,
            line_id,
            [
                OrderLine.hold_status == HoldStatus.HOLDING.value,
                OrderLine.item_status == ItemStatus.DISPUTED.value,
            ],
            {"item_status": ItemStatus.DELIVERED.value, "updated_at": now},
        )
        if restored:
            still_disputed = (
                db.session.query(OrderLine.id)
                .filter(
                    OrderLine.order_id == int(order_id),
                    OrderLine.item_status.in_((ItemStatus.DISPUTED.value, ItemStatus.REFUNDED.value)),
                )
                .first()
            )
            if still_disputed is None:
                conditional_update(
                    Order,
                    order_id,
                    [Order.status == OrderStatus.DISPUTED.value],
                    {"status": OrderStatus.PAID.value, "updated_at": now},
                )
        return restored

    def make_decision(
        self,
        ticket_id: int,
        moderator_id: int,
        resolution_type: str,
        note: str = "",
        refund_amount: int | None = None,
    ) -> ComplaintTicket:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_staff(moderator_id)
        rtype = _parse_enum(ResolutionType, resolution_type, "resolution type")
        if rtype == ResolutionType.NONE:
            raise ValidationError("A decision needs a resolution type")
        if not is_active(ticket.status):
            raise StateConflictError(
                f"Ticket {ticket.ticket_code} is already {ticket.status}",
                ticket_code=ticket.ticket_code,
            )
        current = assert_transition(ticket, TicketStatus.RESOLVED)

        line = db.session.get(OrderLine, int(ticket.order_line_id))
        if line is None:
            raise NotFoundError("Order item not found", order_line_id=int(ticket.order_line_id))
        amount = self._resolve_amount(rtype, int(line.hold_amount or 0), refund_amount)

        line_id = int(line.id)
        order_id = int(line.order_id)
        code = ticket.ticket_code
        already_breached = bool(ticket.sla_breached)
        minutes = minutes_between(ticket.created_at, now)
        on_time = (minutes <= self.sla_resolution_minutes) and not already_breached

        with unit_of_work():
            if not conditional_update(
                ComplaintTicket,
                ticket.id,
                [ComplaintTicket.status == current.value],
                {
                    "status": TicketStatus.RESOLVED.value,
                    "resolution_type": rtype.value,
                    "refund_amount": amount,
                    "decision_note": (note or "").strip() or None,
                    "decided_by": int(moderator_id),
                    "decided_at": now,
                    "appeal_deadline": now + timedelta(hours=self.appeal_window_hours),
                    "assigned_moderator_id": func.coalesce(ComplaintTicket.assigned_moderator_id, int(moderator_id)),
                    "first_response_at": func.coalesce(ComplaintTicket.first_response_at, now),
                    "sla_breached": already_breached or not on_time,
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)

            self.timeline.add_event(
                ticket.id,
                TimelineEventType.DECISION_MADE,
                actor_id=int(moderator_id),
                actor_role=ActorRole.MODERATOR,
                description=f"Decision: {rtype.value}",
                meta={
                    "resolution_type": rtype.value,
                    "refund_amount": amount,
                    "note": (note or "").strip(),
                    "from_status": current.value,
                },
            )
            if rtype in REFUND_TYPES:
                self._refund_or_fail(ticket, line_id, amount, int(moderator_id))
            else:
                self._restore_line(line_id, order_id, now)

            self.queue.mark_completed(ticket.id, now=now)
            self.stats.record_resolution(
                int(moderator_id),
                rtype.value,
                minutes,
                on_time=on_time,
                count_breach=not already_breached,
            )

        current_app.logger.info(
            "complaint decided ticket=%s type=%s amount=%s moderator=%s", code, rtype.value, amount, moderator_id
        )
        return self._ticket(ticket_id)

    # -------------------------
    # Appeals
    # -------------------------
    def file_appeal(self, ticket_id: int, appellant_id: int, reason: str) -> ComplaintTicket:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        party = self._party_of(ticket, appellant_id)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("An appeal needs a reason")
        current = assert_transition(ticket, TicketStatus.APPEAL_REVIEW)
        if ticket.appeal_deadline is None or now > ticket.appeal_deadline:
            raise WindowExpiredError(
                f"Appeal window for ticket {ticket.ticket_code} has expired",
                ticket_code=ticket.ticket_code,
            )

        code = ticket.ticket_code
        decided_by = ticket.decided_by
        with unit_of_work():
            if not conditional_update(
                ComplaintTicket,
                ticket.id,
                [ComplaintTicket.status == current.value],
                {
                    "status": TicketStatus.APPEAL_REVIEW.value,
                    "appeal_reason": reason,
                    "appeal_filed_by": int(appellant_id),
                    "appeal_filed_at": now,
                    "original_resolution_type": ticket.resolution_type,
                    "escalation_level": EscalationLevel.SENIOR_MOD.value,
                    "updated_at": now,
                },
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            # Keep undecided money in escrow while the appeal runs
            conditional_update(
                OrderLine,
                ticket.order_line_id,
                [OrderLine.hold_status == HoldStatus.HOLDING.value],
                {"item_status": ItemStatus.DISPUTED.value, "updated_at": now},
            )
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.APPEAL_FILED,
                actor_id=int(appellant_id),
                actor_role=party.value,
                description=f"Appeal filed by the {party.value}",
                meta={"reason": reason, "original_resolution_type": ticket.original_resolution_type},
            )
            self.stats.record_appeal(decided_by, overturned=False)

        current_app.logger.info("appeal filed ticket=%s by=%s", code, appellant_id)
        return self._ticket(ticket_id)

    def resolve_appeal(
        self,
        ticket_id: int,
        reviewer_id: int,
        decision: str,
        reason: str = "",
        *,
        new_resolution_type: str | None = None,
        new_refund_amount: int | None = None,
    ) -> ComplaintTicket:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        self._require_staff(reviewer_id)
        outcome = _parse_enum(AppealDecision, decision, "appeal decision")
        target = TicketStatus.APPEAL_UPHELD if outcome == AppealDecision.UPHELD else TicketStatus.APPEAL_OVERTURNED
        current = assert_transition(ticket, target)

        line = db.session.get(OrderLine, int(ticket.order_line_id))
        if line is None:
            raise NotFoundError("Order item not found", order_line_id=int(ticket.order_line_id))
        line_id = int(line.id)
        order_id = int(line.order_id)
        holding = line.hold_status == HoldStatus.HOLDING.value

        new_type = None
        amount = ticket.refund_amount
        if outcome == AppealDecision.OVERTURNED:
            new_type = _parse_enum(ResolutionType, new_resolution_type, "resolution type")
            if new_type == ResolutionType.NONE:
                raise ValidationError("An overturned appeal needs a new resolution type")
            amount = self._resolve_amount(new_type, int(line.hold_amount or 0), new_refund_amount)

        code = ticket.ticket_code
        decided_by = ticket.decided_by
        previous_type = ticket.resolution_type
        changes = {
            "status": target.value,
            "appeal_decided_by": int(reviewer_id),
            "appeal_decided_at": now,
            "updated_at": now,
        }
        if new_type is not None:
            changes.update({"resolution_type": new_type.value, "refund_amount": amount})

        with unit_of_work():
            if not conditional_update(ComplaintTicket, ticket.id, [ComplaintTicket.status == current.value], changes):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.APPEAL_RESOLVED,
                actor_id=int(reviewer_id),
                actor_role=ActorRole.SENIOR_MOD,
                description=f"Appeal {outcome.value.lower()}",
                meta={
                    "decision": outcome.value,
                    "reason": (reason or "").strip(),
                    "previous_resolution_type": previous_type,
                    "new_resolution_type": new_type.value if new_type else None,
                    "refund_amount": amount,
                },
            )

            if new_type is None:
                self._restore_line(line_id, order_id, now)
            elif new_type in REFUND_TYPES and holding:
                self._refund_or_fail(ticket, line_id, amount, int(reviewer_id))
            elif new_type in REFUND_TYPES or previous_type in {t.value for t in REFUND_TYPES}:
                # Funds already left escrow; the ledger is never rewritten
                AuditLog.record(
                    "manual_adjustment_required",
                    target_type="complaint_ticket",
                    target_id=ticket.id,
                    actor_user_id=int(reviewer_id),
                    meta={
                        "ticket_code": code,
                        "order_line_id": line_id,
                        "hold_status": line.hold_status,
                        "previous_resolution_type": previous_type,
                        "new_resolution_type": new_type.value,
                        "refund_amount": amount,
                    },
                    at=now,
                )
                self.timeline.add_event(
                    ticket.id,
                    TimelineEventType.STATUS_CHANGED,
                    actor_role=ActorRole.SYSTEM,
                    description="Escrow already settled; manual adjustment required",
                    meta={"order_line_id": line_id, "hold_status": line.hold_status},
                )
                if holding:
                    self._restore_line(line_id, order_id, now)
            else:
                self._restore_line(line_id, order_id, now)

            if outcome == AppealDecision.OVERTURNED:
                self.stats.increment(decided_by, appeals_overturned=1)

        current_app.logger.info("appeal resolved ticket=%s outcome=%s reviewer=%s", code, outcome.value, reviewer_id)
        return self._ticket(ticket_id)

    # -------------------------
    # Closing
    # -------------------------
    def close_complaint(self, ticket_id: int, actor_id: int | None, actor_role=ActorRole.SYSTEM, reason: str = "") -> ComplaintTicket:
        now = self.clock()
        ticket = self._ticket(ticket_id)
        role = _role_value(actor_role)
        status = TicketStatus(ticket.status)
        withdrawal = status == TicketStatus.OPEN

        if withdrawal:
            if actor_id is None or int(actor_id) != int(ticket.customer_id):
                raise PermissionDeniedError("Only the buyer can withdraw an open complaint", ticket_code=ticket.ticket_code)
        elif status in CLOSABLE_STATUSES:
            if role not in STAFF_ROLES and role != ActorRole.SYSTEM.value:
                raise PermissionDeniedError("Only staff can close a decided complaint", ticket_code=ticket.ticket_code)
        current = assert_transition(ticket, TicketStatus.CLOSED)

        code = ticket.ticket_code
        line_id = int(ticket.order_line_id)
        order_id = int(ticket.order_id)
        with unit_of_work():
            if not conditional_update(
                ComplaintTicket,
                ticket.id,
                [ComplaintTicket.status == current.value],
                {"status": TicketStatus.CLOSED.value, "closed_at": now, "updated_at": now},
            ):
                raise StateConflictError(f"Ticket {code} changed concurrently", ticket_code=code)
            if withdrawal:
                self._restore_line(line_id, order_id, now)
                self.queue.mark_completed(ticket.id, now=now)
                self.timeline.add_event(
                    ticket.id,
                    TimelineEventType.WITHDRAWN,
                    actor_id=actor_id,
                    actor_role=ActorRole.BUYER,
                    description="Complaint withdrawn by the buyer",
                    meta={"reason": (reason or "").strip()},
                )
            self.timeline.add_event(
                ticket.id,
                TimelineEventType.CLOSED,
                actor_id=actor_id,
                actor_role=role or ActorRole.SYSTEM.value,
                description="Complaint closed",
                meta={"from_status": current.value, "reason": (reason or "").strip()},
            )
        current_app.logger.info("complaint closed ticket=%s from=%s", code, current.value)
        return self._ticket(ticket_id)

    def close_expired_appeal_windows(self, *, limit: int = 500) -> dict:
        """Close decided tickets whose appeal window has run out."""
        now = self.clock()
        ids = [
            int(r[0])
            for r in db.session.query(ComplaintTicket.id)
            .filter(
                ComplaintTicket.status.in_(values(CLOSABLE_STATUSES)),
                ComplaintTicket.appeal_deadline.isnot(None),
                ComplaintTicket.appeal_deadline <= now,
            )
            .order_by(ComplaintTicket.appeal_deadline.asc(), ComplaintTicket.id.asc())
            .limit(int(limit))
            .all()
        ]
        closed = 0
        failed = 0
        for ticket_id in ids:
            try:
                self.close_complaint(ticket_id, None, ActorRole.SYSTEM, reason="Appeal window expired")
                closed += 1
            except EscrowCourtError as exc:
                failed += 1
                current_app.logger.warning("auto-close skipped ticket=%s: %s", ticket_id, exc)
        return {"ok": True, "checked": len(ids), "closed": closed, "failed": failed, "ts": now.isoformat()}

    def flag_sla_breaches(self, *, limit: int = 500) -> dict:
        """Mark active tickets that outlived the resolution SLA and bump their priority."""
        now = self.clock()
        cutoff = now - timedelta(minutes=self.sla_resolution_minutes)
        tickets = (
            ComplaintTicket.query.filter(
                ComplaintTicket.status.in_(values(ACTIVE_STATUSES)),
                ComplaintTicket.sla_breached.is_(False),
                ComplaintTicket.created_at <= cutoff,
            )
            .order_by(ComplaintTicket.created_at.asc())
            .limit(int(limit))
            .all()
        )
        flagged = 0
        for ticket in tickets:
            ticket_id = int(ticket.id)
            moderator_id = ticket.assigned_moderator_id
            with unit_of_work():
                if not conditional_update(
                    ComplaintTicket,
                    ticket_id,
                    [ComplaintTicket.sla_breached.is_(False)],
                    {"sla_breached": True, "updated_at": now},
                ):
                    continue
                self.timeline.add_event(
                    ticket_id,
                    TimelineEventType.SLA_BREACHED,
                    actor_role=ActorRole.SYSTEM,
                    description=f"Resolution SLA of {self.sla_resolution_minutes} minutes exceeded",
                    meta={"assigned_moderator_id": moderator_id},
                )
                self.stats.record_sla_breach(moderator_id)
                self.queue.escalate(ticket_id)
            flagged += 1
        if flagged:
            current_app.logger.warning("sla breaches flagged=%s", flagged)
        return {"ok": True, "checked": len(tickets), "flagged": flagged, "ts": now.isoformat()}

    # -------------------------
    # Reads
    # -------------------------
    def get_timeline(self, ticket_id: int) -> list[dict]:
        self._ticket(ticket_id)
        return self.timeline.get_timeline(ticket_id)

    def _complaints_of(self, column, user_id: int, status, limit, skip) -> dict:
        q = ComplaintTicket.query.filter(column == int(user_id))
        if status:
            q = q.filter(ComplaintTicket.status == _parse_enum(TicketStatus, status, "status").value)
        total = q.count()
        rows = (
            q.order_by(ComplaintTicket.created_at.desc(), ComplaintTicket.id.desc())
            .offset(max(int(skip), 0))
            .limit(max(int(limit), 1))
            .all()
        )
        return {"tickets": [t.to_dict() for t in rows], "total": int(total)}

    def get_my_complaints(self, buyer_id: int, *, status: str | None = None, limit: int = 20, skip: int = 0) -> dict:
        return self._complaints_of(ComplaintTicket.customer_id, buyer_id, status, limit, skip)

    def get_shop_complaints(self, seller_id: int, *, status: str | None = None, limit: int = 20, skip: int = 0) -> dict:
        """Complaints filed against the seller's items, newest first."""
        return self._complaints_of(ComplaintTicket.seller_id, seller_id, status, limit, skip)

    def get_complaint_by_id(self, ticket_id: int, viewer_id: int, viewer_role=ActorRole.BUYER) -> dict:
        ticket = self._ticket(ticket_id)
        role = _role_value(viewer_role)
        staff = role in STAFF_ROLES
        if not staff and int(viewer_id) not in (int(ticket.customer_id), int(ticket.seller_id)):
            raise PermissionDeniedError("You cannot view this complaint", ticket_code=ticket.ticket_code)

        data = ticket.to_dict(include_internal=staff)
        data["evidence"] = [
            e.to_dict()
            for e in ComplaintEvidence.query.filter_by(ticket_id=ticket.id).order_by(ComplaintEvidence.id.asc()).all()
        ]
        data["timeline"] = self.timeline.get_timeline(ticket.id)
        if staff:
            data["internal_notes"] = [
                n.to_dict()
                for n in ComplaintInternalNote.query.filter_by(ticket_id=ticket.id)
                .order_by(ComplaintInternalNote.id.asc())
                .all()
            ]
            entry = self.queue.entry_for_ticket(ticket.id)
            data["queue"] = entry.to_dict() if entry else None
        return data

    def get_all_complaints(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
        assigned_moderator_id: int | None = None,
        sla_breached: bool | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> dict:
        q = ComplaintTicket.query
        if status:
            q = q.filter(ComplaintTicket.status == _parse_enum(TicketStatus, status, "status").value)
        if category:
            q = q.filter(ComplaintTicket.category == category)
        if assigned_moderator_id is not None:
            q = q.filter(ComplaintTicket.assigned_moderator_id == int(assigned_moderator_id))
        if sla_breached is not None:
            q = q.filter(ComplaintTicket.sla_breached == bool(sla_breached))
        total = q.count()
        rows = (
            q.order_by(ComplaintTicket.calculated_priority.desc(), ComplaintTicket.created_at.asc())
            .offset(max(int(skip), 0))
            .limit(max(int(limit), 1))
            .all()
        )
        return {"tickets": [t.to_dict(include_internal=True) for t in rows], "total": int(total)}
