from __future__ import annotations

from escrowcourt.services import get_services


def refresh_queue_priorities() -> dict:
    return get_services().queue.refresh_priorities()


def run_sla_monitor(*, limit: int = 500) -> dict:
    """Flag tickets past the resolution SLA. A ticket is only ever flagged once."""
    return get_services().complaints.flag_sla_breaches(limit=limit)


def close_expired_appeal_windows(*, limit: int = 500) -> dict:
    return get_services().complaints.close_expired_appeal_windows(limit=limit)


def escalate_seller_timeouts(*, limit: int = 500) -> dict:
    """Send tickets whose seller never answered to a moderator."""
    return get_services().complaints.escalate_seller_timeouts(limit=limit)
