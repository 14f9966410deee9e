from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from escrowcourt.services.complaint_queue import ComplaintQueueScheduler
from escrowcourt.services.complaints import ComplaintService
from escrowcourt.services.disbursement import DisbursementProcessor
from escrowcourt.services.moderator_stats import ModeratorStatsRecorder
from escrowcourt.services.timeline import TimelineService
from escrowcourt.utils.clock import utc_now
from escrowcourt.utils.inventory import InventoryGateway
from escrowcourt.utils.wallets import WalletProvider

EXTENSION_KEY = "escrowcourt"


@dataclass
class Services:
    wallets: WalletProvider
    inventory: InventoryGateway
    timeline: TimelineService
    stats: ModeratorStatsRecorder
    processor: DisbursementProcessor
    queue: ComplaintQueueScheduler
    complaints: ComplaintService


def build_services(config, *, clock=utc_now) -> Services:
    """Wire the engine from a config mapping. Every collaborator is passed in explicitly."""
    wallets = WalletProvider(currency=config.get("CURRENCY", "VND"))
    inventory = InventoryGateway()
    timeline = TimelineService(clock=clock)
    stats = ModeratorStatsRecorder(clock=clock)
    processor = DisbursementProcessor(
        wallets=wallets,
        inventory=inventory,
        clock=clock,
        escrow_window_hours=config.get("ESCROW_WINDOW_HOURS", 72),
        fee_rate=config.get("PLATFORM_FEE_RATE", 0.05),
        batch_limit=config.get("DISBURSEMENT_BATCH_LIMIT", 100),
        partial_refund_remainder=config.get("PARTIAL_REFUND_REMAINDER", "hold"),
    )
    queue = ComplaintQueueScheduler(
        timeline=timeline,
        stats=stats,
        clock=clock,
        weights=config.get("PRIORITY_WEIGHTS"),
        high_value_threshold=config.get("HIGH_VALUE_THRESHOLD", 1_000_000),
        age_cap_hours=config.get("PRIORITY_AGE_CAP_HOURS", 72),
        escalation_multiplier=config.get("ESCALATION_MULTIPLIER", 1.2),
        default_pick_count=config.get("DEFAULT_PICK_COUNT", 5),
        max_pick_count=config.get("MAX_PICK_COUNT", 10),
        claim_retries=config.get("CLAIM_RETRIES", 5),
        estimated_resolution_minutes=config.get("QUEUE_ESTIMATED_RESOLUTION_MINUTES", 120),
    )
    complaints = ComplaintService(
        processor=processor,
        queue=queue,
        timeline=timeline,
        stats=stats,
        clock=clock,
        complaint_window_hours=config.get("COMPLAINT_WINDOW_HOURS", 72),
        appeal_window_hours=config.get("APPEAL_WINDOW_HOURS", 72),
        seller_response_hours=config.get("SELLER_RESPONSE_HOURS", 48),
        sla_resolution_minutes=config.get("SLA_RESOLUTION_MINUTES", 2880),
        default_trust_level=config.get("DEFAULT_TRUST_LEVEL", 50),
        auto_assign=config.get("COMPLAINT_AUTO_ASSIGN", False),
    )
    return Services(
        wallets=wallets,
        inventory=inventory,
        timeline=timeline,
        stats=stats,
        processor=processor,
        queue=queue,
        complaints=complaints,
    )


def init_services(app, *, clock=utc_now) -> Services:
    services = build_services(app.config, clock=clock)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
