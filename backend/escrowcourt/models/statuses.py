from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "PendingPayment"
    PAID = "Paid"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    DISPUTED = "Disputed"
    REFUNDED = "Refunded"


class HoldStatus(str, Enum):
    HOLDING = "Holding"
    RELEASED = "Released"
    REFUNDED = "Refunded"


class ItemStatus(str, Enum):
    WAITING_DELIVERY = "WaitingDelivery"
    DELIVERED = "Delivered"
    DISPUTED = "Disputed"
    COMPLETED = "Completed"
    REFUNDED = "Refunded"


class InventoryStatus(str, Enum):
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    DELIVERED = "Delivered"
    REVOKED = "Revoked"


class TxnType(str, Enum):
    TOPUP = "Topup"
    PURCHASE = "Purchase"
    HOLD = "Hold"
    RELEASE = "Release"
    REFUND = "Refund"
    ADJUSTMENT = "Adjustment"


class RefType(str, Enum):
    ORDER = "Order"
    ORDER_LINE = "OrderLine"
    TICKET = "Ticket"
    SYSTEM = "System"


class Direction(str, Enum):
    IN = "In"
    OUT = "Out"


class TicketStatus(str, Enum):
    OPEN = "Open"
    IN_REVIEW = "InReview"
    NEED_MORE_INFO = "NeedMoreInfo"
    RESOLVED = "Resolved"
    APPEAL_REVIEW = "AppealReview"
    APPEAL_UPHELD = "AppealUpheld"
    APPEAL_OVERTURNED = "AppealOverturned"
    CLOSED = "Closed"


class ResolutionType(str, Enum):
    NONE = "None"
    FULL_REFUND = "FullRefund"
    PARTIAL_REFUND = "PartialRefund"
    REPLACE = "Replace"
    REJECT = "Reject"


class AppealDecision(str, Enum):
    UPHELD = "Upheld"
    OVERTURNED = "Overturned"


class EscalationLevel(str, Enum):
    MODERATOR = "Level2_Moderator"
    SENIOR_MOD = "Level3_SeniorMod"
    ADMIN = "Level4_Admin"


class SellerResponseStatus(str, Enum):
    PENDING = "Pending"
    RESPONDED = "Responded"
    PROPOSED = "Proposed"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    TIMEOUT = "Timeout"


class QueueStatus(str, Enum):
    IN_QUEUE = "InQueue"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class EvidenceParty(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class EvidenceType(str, Enum):
    IMAGE = "Image"
    VIDEO = "Video"
    SCREENSHOT = "Screenshot"
    DOCUMENT = "Document"


class ActorRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    MODERATOR = "moderator"
    SENIOR_MOD = "senior_mod"
    ADMIN = "admin"
    SYSTEM = "system"


class TimelineEventType(str, Enum):
    CREATED = "Created"
    EVIDENCE_ADDED = "EvidenceAdded"
    ADDED_TO_QUEUE = "AddedToQueue"
    MODERATOR_ASSIGNED = "ModeratorAssigned"
    STATUS_CHANGED = "StatusChanged"
    INTERNAL_NOTE_ADDED = "InternalNoteAdded"
    INFO_REQUESTED = "InfoRequested"
    INFO_PROVIDED = "InfoProvided"
    DECISION_MADE = "DecisionMade"
    REFUND_PROCESSED = "RefundProcessed"
    APPEAL_FILED = "AppealFiled"
    APPEAL_RESOLVED = "AppealResolved"
    SELLER_RESPONDED = "SellerResponded"
    SELLER_PROPOSED = "SellerProposed"
    BUYER_ACCEPTED = "BuyerAccepted"
    BUYER_REJECTED = "BuyerRejected"
    SELLER_TIMEOUT = "SellerTimeout"
    ESCALATED = "EscalatedToModerator"
    SLA_BREACHED = "SlaBreached"
    WITHDRAWN = "Withdrawn"
    CLOSED = "Closed"


STAFF_ROLES = (ActorRole.MODERATOR.value, ActorRole.SENIOR_MOD.value, ActorRole.ADMIN.value)
